"""
Transformation Service

Entry points for the HTTP layer:

- register_image / list_images / get_image / delete_image
- request_transform: asynchronous path (lock, persist job, publish)
- transform_sync: synchronous path (cache lookup, execute, store)
- get_status / get_job: status polling

Both transform paths share the canonical key, the result cache and the
pipeline executor.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, Union, List

from sqlalchemy.exc import SQLAlchemyError

from src.core.cache import IResultCache
from src.core.config import Settings
from src.core.exceptions import (
    AlreadyProcessingError,
    NotFoundError,
    QueueUnavailableError,
    SourceUnreadableError,
    ValidationError,
)
from src.core.logging import get_logger, LogContext
from src.core.queue import JobQueue
from src.core.storage import IStorage
from src.modules.imagery.models import ImageRecord, utc_now
from src.modules.imagery.repositories import ImageRepository, JobRepository
from src.modules.imagery.schemas import JobMessage, TransformationSpec, parse_spec
from src.modules.imagery.state import JobStateMachine, JobStatus
from src.pipeline.canonical import canonical_key
from src.pipeline.executor import PipelineExecutor, output_descriptor
from src.pipeline.stages import content_type_for, resolve_format

logger = get_logger(__name__)

SpecInput = Union[TransformationSpec, Dict[str, Any], None]


@dataclass
class TransformOutput:
    """Bytes of a transformed image plus where they are stored."""
    data: bytes
    content_type: str
    output: Dict[str, Any] = field(default_factory=dict)
    cache_hit: bool = False


class TransformationService:
    def __init__(
        self,
        images: ImageRepository,
        jobs: JobRepository,
        state: JobStateMachine,
        storage: IStorage,
        cache: IResultCache,
        executor: PipelineExecutor,
        queue: JobQueue,
        config: Settings
    ):
        self.images = images
        self.jobs = jobs
        self.state = state
        self.storage = storage
        self.cache = cache
        self.executor = executor
        self.queue = queue
        self.config = config

    # =========================================================================
    # Images
    # =========================================================================

    def register_image(
        self,
        owner_id: str,
        filename: str,
        content_type: Optional[str],
        data: bytes
    ) -> ImageRecord:
        """Validate, probe and store an upload, then create its record."""
        if not data:
            raise ValidationError("No image file provided")
        if len(data) > self.config.MAX_IMAGE_SIZE_BYTES:
            raise ValidationError(
                f"File too large. Maximum size is {self.config.MAX_IMAGE_SIZE_BYTES // (1024 * 1024)}MB"
            )
        if content_type not in self.config.allowed_mime_types:
            raise ValidationError(
                "Invalid file type. Allowed types: " + ", ".join(self.config.allowed_mime_types)
            )

        try:
            info = self.executor.probe(data)
        except SourceUnreadableError as e:
            raise ValidationError(f"Invalid image file: {e.message}")

        path = self.storage.upload(data, filename, folder=self.config.UPLOAD_FOLDER)
        record = self.images.create(ImageRecord(
            owner_id=owner_id,
            original_name=filename,
            filename=Path(path).name,
            mime_type=content_type,
            size=len(data),
            width=info.width,
            height=info.height,
            path=path,
            image_metadata=info.to_dict(),
        ))

        logger.info("image_registered", image_id=record.id, size=record.size, format=info.format)
        return record

    def load_image(self, image_id: str, owner_id: str) -> ImageRecord:
        record = self.images.find_by_id(image_id, owner_id)
        if record is None:
            raise NotFoundError("Image not found")
        return record

    def list_images(self, owner_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        records, total = self.images.list_for_owner(owner_id, limit=limit, offset=(page - 1) * limit)
        return {
            "images": [r.to_response_dict() for r in records],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }

    def get_image(self, image_id: str, owner_id: str, fmt: Optional[str] = None) -> TransformOutput:
        """Original bytes, or a format conversion served through the sync path."""
        record = self.load_image(image_id, owner_id)
        source_format = resolve_format(None, record.image_metadata.get("format"))
        if fmt and resolve_format(fmt, None) != source_format:
            return self.transform_sync(image_id, owner_id, {"format": fmt})

        data = self.storage.read(record.path)
        return TransformOutput(
            data=data,
            content_type=record.mime_type,
            output={"path": record.path, "filename": record.filename},
        )

    def delete_image(self, image_id: str, owner_id: str) -> Dict[str, Any]:
        record = self.load_image(image_id, owner_id)
        # Conditional on the lock, so a transform accepted after load_image wins
        if not self.images.delete_if_idle(image_id):
            raise AlreadyProcessingError(image_id)

        self.storage.delete(record.path)
        evicted = self.cache.delete_by_image(image_id)

        logger.info("image_deleted", image_id=image_id, cache_entries_removed=evicted)
        return {"imageId": image_id, "deleted": True}

    # =========================================================================
    # Asynchronous path
    # =========================================================================

    def request_transform(self, image_id: str, owner_id: str, spec: SpecInput) -> Dict[str, Any]:
        """
        Accept an asynchronous transformation.

        Raises:
            ValidationError: spec is malformed
            NotFoundError: image or its source file is missing
            AlreadyProcessingError: a job already holds this image
            QueueUnavailableError: the broker rejected the job (the job is
                marked failed and the image released)
        """
        spec = parse_spec(spec)

        with LogContext(image_id=image_id):
            record = self.load_image(image_id, owner_id)
            if not self.storage.exists(record.path):
                raise NotFoundError("Image file not found in storage")

            if not self.images.try_acquire_processing(image_id):
                raise AlreadyProcessingError(image_id)

            message = JobMessage(
                image_id=image_id,
                owner_id=owner_id,
                source_path=record.path,
                original_filename=record.original_name,
                transformations=spec,
            )

            try:
                self.state.begin(message)
            except SQLAlchemyError as e:
                self.images.release_processing(image_id, status="failed", error=str(e))
                raise

            try:
                self.queue.publish(message)
            except QueueUnavailableError as e:
                self.state.fail(message.job_id, image_id, e.message)
                raise

            logger.info("transform_requested", job_id=message.job_id)

        return {
            "jobId": message.job_id,
            "imageId": image_id,
            "status": JobStatus.PENDING.value,
            "transformations": spec.to_payload(),
        }

    def get_status(self, image_id: str, owner_id: str) -> Dict[str, Any]:
        return self.load_image(image_id, owner_id).status_dict()

    def get_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError("Job not found")
        return job.to_response_dict()

    def list_jobs(self, image_id: str, owner_id: str) -> List[Dict[str, Any]]:
        self.load_image(image_id, owner_id)
        return [job.to_response_dict() for job in self.jobs.list_for_image(image_id)]

    # =========================================================================
    # Synchronous path
    # =========================================================================

    def _cached_output(self, key: str) -> Optional[TransformOutput]:
        cached_path = self.cache.get(key)
        if not cached_path or not self.storage.exists(cached_path):
            return None

        data = self.storage.read(cached_path)
        try:
            info = self.executor.probe(data)
        except SourceUnreadableError as e:
            logger.warning("cached_output_unreadable", path=cached_path, error=e.message)
            return None

        fmt = resolve_format(None, info.format)
        return TransformOutput(
            data=data,
            content_type=content_type_for(fmt),
            output=output_descriptor(cached_path, fmt, info.width, info.height, len(data)),
            cache_hit=True,
        )

    def transform_sync(self, image_id: str, owner_id: str, spec: SpecInput) -> TransformOutput:
        """
        Transform in the calling thread.

        A cache hit whose output still exists is served as is; otherwise the
        pipeline runs, the result is stored under a fresh key, cached and
        recorded in the image history.
        """
        spec = parse_spec(spec)

        with LogContext(image_id=image_id):
            record = self.load_image(image_id, owner_id)
            if not self.storage.exists(record.path):
                raise NotFoundError("Image file not found in storage")

            key = canonical_key(image_id, spec)
            cached = self._cached_output(key)
            if cached is not None:
                logger.info("transform_sync_cache_hit", path=cached.output["path"])
                return cached

            source = self.storage.read(record.path)
            result = self.executor.execute(source, spec, source_format=record.image_metadata.get("format"))

            stem = Path(record.filename).stem
            path = self.storage.upload(result.data, f"{stem}.{result.format}", folder=self.config.PROCESSED_FOLDER)
            self.cache.set(key, path)

            output = output_descriptor(path, result.format, result.width, result.height, result.size_bytes)
            self.images.append_history(image_id, {
                "transformations": spec.to_payload(),
                "output": output,
                "appliedAt": utc_now().isoformat(),
            })

            logger.info("transform_sync_completed", path=path, size_bytes=result.size_bytes)

        return TransformOutput(data=result.data, content_type=result.content_type, output=output)
