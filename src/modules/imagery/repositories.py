"""
Metadata Store Repositories

Every write that guards a concurrency invariant (the image processing lock,
job status moves) is a single conditional UPDATE whose affected row count
decides the outcome. Each method runs in its own short transaction.
"""

from typing import Optional, Dict, Any, Iterable, List, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy import delete, func, update
from sqlmodel import Session, select, col

from src.core.logging import get_logger
from src.modules.imagery.models import ImageRecord, TransformationJob, utc_now

logger = get_logger(__name__)


class ImageRepository:
    """Repository for image records."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, record: ImageRecord) -> ImageRecord:
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    def find_by_id(self, image_id: str, owner_id: Optional[str] = None) -> Optional[ImageRecord]:
        """Fetch an image, optionally scoped to its owner."""
        with self._session() as session:
            stmt = select(ImageRecord).where(ImageRecord.id == image_id)
            if owner_id is not None:
                stmt = stmt.where(ImageRecord.owner_id == owner_id)
            return session.exec(stmt).first()

    def list_for_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[ImageRecord], int]:
        """Newest first. Returns (page, total count)."""
        with self._session() as session:
            stmt = (
                select(ImageRecord)
                .where(ImageRecord.owner_id == owner_id)
                .order_by(col(ImageRecord.created_at).desc())
                .offset(offset)
                .limit(limit)
            )
            total = session.exec(
                select(func.count()).select_from(ImageRecord).where(ImageRecord.owner_id == owner_id)
            ).one()
            return list(session.exec(stmt).all()), total

    def try_acquire_processing(self, image_id: str) -> bool:
        """Set is_processing from false to true. False if another job holds it."""
        with self._session() as session:
            stmt = (
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .where(col(ImageRecord.is_processing).is_(False))
                .values(
                    is_processing=True,
                    processing_status="pending",
                    processing_error=None,
                    updated_at=utc_now(),
                )
            )
            acquired = session.exec(stmt).rowcount == 1
            session.commit()
        logger.debug("processing_lock", image_id=image_id, acquired=acquired)
        return acquired

    def release_processing(
        self,
        image_id: str,
        status: str = "failed",
        error: Optional[str] = None
    ) -> bool:
        with self._session() as session:
            stmt = (
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .values(
                    is_processing=False,
                    processing_status=status,
                    processing_error=error,
                    updated_at=utc_now(),
                )
            )
            released = session.exec(stmt).rowcount == 1
            session.commit()
        return released

    def update_status(self, image_id: str, status: str, error: Optional[str] = None) -> bool:
        """Record processing progress without touching the lock."""
        with self._session() as session:
            stmt = (
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .values(processing_status=status, processing_error=error, updated_at=utc_now())
            )
            updated = session.exec(stmt).rowcount == 1
            session.commit()
        return updated

    def append_history(
        self,
        image_id: str,
        entry: Dict[str, Any],
        release: bool = False
    ) -> Optional[ImageRecord]:
        """
        Append one transformation history entry and stamp last_transformed_at.

        With ``release=True`` the processing lock is released and the status set
        to completed in the same transaction.
        """
        with self._session() as session:
            stmt = select(ImageRecord).where(ImageRecord.id == image_id).with_for_update()
            record = session.exec(stmt).first()
            if record is None:
                return None

            now = utc_now()
            # Replace the list so SQLAlchemy sees the JSON column change
            record.transformations = list(record.transformations or []) + [entry]
            record.last_transformed_at = now
            record.updated_at = now
            if release:
                record.is_processing = False
                record.processing_status = "completed"
                record.processing_error = None

            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def complete(self, image_id: str, entry: Dict[str, Any]) -> Optional[ImageRecord]:
        return self.append_history(image_id, entry, release=True)

    def fail(self, image_id: str, error: str) -> bool:
        return self.release_processing(image_id, status="failed", error=error)

    def delete_if_idle(self, image_id: str) -> bool:
        """Delete the record unless a job holds its processing lock."""
        with self._session() as session:
            stmt = (
                delete(ImageRecord)
                .where(ImageRecord.id == image_id)
                .where(col(ImageRecord.is_processing).is_(False))
            )
            deleted = session.exec(stmt).rowcount == 1
            session.commit()
        return deleted


class JobRepository:
    """Repository for transformation jobs."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, job: TransformationJob) -> TransformationJob:
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        return job

    def get(self, job_id: str) -> Optional[TransformationJob]:
        with self._session() as session:
            return session.get(TransformationJob, job_id)

    def list_for_image(self, image_id: str) -> List[TransformationJob]:
        with self._session() as session:
            stmt = (
                select(TransformationJob)
                .where(TransformationJob.image_id == image_id)
                .order_by(col(TransformationJob.created_at))
            )
            return list(session.exec(stmt).all())

    def transition(
        self,
        job_id: str,
        allowed_from: Iterable[str],
        target: str,
        **values: Any
    ) -> bool:
        """
        Compare-and-set the job status.

        The row is only updated while its current status is one of
        ``allowed_from``. Returns True if the update applied.
        """
        values.setdefault("updated_at", utc_now())
        with self._session() as session:
            stmt = (
                update(TransformationJob)
                .where(TransformationJob.id == job_id)
                .where(col(TransformationJob.status).in_(list(allowed_from)))
                .values(status=target, **values)
            )
            applied = session.exec(stmt).rowcount == 1
            session.commit()
        return applied

    def note_error(self, job_id: str, error: str) -> None:
        """Record the latest error on a job that is still running."""
        with self._session() as session:
            stmt = (
                update(TransformationJob)
                .where(TransformationJob.id == job_id)
                .values(error=error, updated_at=utc_now())
            )
            session.exec(stmt)
            session.commit()
