"""
Transformation Worker

Handles one job message at a time and reports what the broker should do
with the delivery:

- completed:   output stored, job and image updated, cache populated (ack)
- skipped:     job was already terminal, e.g. a redelivery (ack)
- retry:       transient failure with retry budget left, or the metadata
               store could not record the outcome (republish later)
- dead_letter: permanent failure or retries exhausted (reject, no requeue)

The Celery task in src.pipeline.tasks is a thin adapter over handle().
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError

from src.core.cache import IResultCache
from src.core.exceptions import (
    PERMANENT_ERRORS,
    InvalidTransitionError,
    TransformBaseException,
    ValidationError,
)
from src.core.logging import get_logger, LogContext
from src.core.metrics import active_jobs_gauge, record_dead_letter, record_job_outcome
from src.core.storage import IStorage
from src.modules.imagery.models import utc_now
from src.modules.imagery.schemas import JobMessage
from src.modules.imagery.state import JobStateMachine
from src.pipeline.canonical import canonical_key
from src.pipeline.executor import PipelineExecutor, output_descriptor

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass
class WorkerResult:
    outcome: JobOutcome
    job_id: Optional[str]
    error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    retry_in: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "jobId": self.job_id,
            "error": self.error,
            "output": self.output,
        }


def _error_text(exc: Exception) -> str:
    return exc.message if isinstance(exc, TransformBaseException) else str(exc)


class TransformationWorker:
    def __init__(
        self,
        state: JobStateMachine,
        storage: IStorage,
        cache: IResultCache,
        executor: PipelineExecutor,
        max_retries: int = 3,
        retry_delay: int = 5,
        output_folder: str = "processed"
    ):
        self.state = state
        self.storage = storage
        self.cache = cache
        self.executor = executor
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.output_folder = output_folder

    def retry_countdown(self, attempt: int) -> int:
        """Exponential backoff: retry_delay * 2**attempt seconds."""
        return self.retry_delay * (2 ** attempt)

    def handle(self, payload: Dict[str, Any], attempt: int = 0) -> WorkerResult:
        """
        Process one delivery of a job message.

        Args:
            payload: Job message as published by the producer
            attempt: Number of retries already spent on this message
        """
        try:
            message = JobMessage.from_payload(payload)
        except ValidationError as e:
            job_id = payload.get("jobId") if isinstance(payload, dict) else None
            logger.error("job_message_malformed", job_id=job_id, error=e.message)
            record_dead_letter("malformed")
            record_job_outcome("failed")
            return WorkerResult(JobOutcome.DEAD_LETTER, job_id, error=e.message)

        with LogContext(job_id=message.job_id, image_id=message.image_id) as ctx:
            try:
                terminal = self.state.is_terminal(message.job_id)
            except SQLAlchemyError as e:
                return self._bookkeeping_retry(message, attempt, str(e))

            if terminal:
                logger.info("job_redelivery_skipped")
                record_job_outcome("skipped")
                return WorkerResult(JobOutcome.SKIPPED, message.job_id)

            active_jobs_gauge.inc()
            try:
                ctx.set_stage("start")
                self.state.start(message.job_id, message.image_id)
                logger.info("job_started", attempt=attempt)

                ctx.set_stage("transform")
                output = self._transform(message)

                ctx.set_stage("complete")
                return self._complete(message, output)

            except InvalidTransitionError as e:
                if e.details.get("current") is None:
                    logger.error("job_unknown", error=e.message)
                    record_dead_letter("unknown_job")
                    record_job_outcome("failed")
                    return WorkerResult(JobOutcome.DEAD_LETTER, message.job_id, error=e.message)

                # Another delivery already finished this job
                logger.warning("job_transition_rejected", error=e.message)
                record_job_outcome("skipped")
                return WorkerResult(JobOutcome.SKIPPED, message.job_id, error=e.message)

            except PERMANENT_ERRORS as e:
                logger.error("job_failed_permanently", error=_error_text(e), error_type=type(e).__name__)
                return self._dead_letter(message, _error_text(e), reason="permanent", attempt=attempt)

            except Exception as e:
                error = _error_text(e)
                if attempt < self.max_retries:
                    countdown = self.retry_countdown(attempt)
                    try:
                        self.state.note_retry(message.job_id, message.image_id, error)
                    except SQLAlchemyError as store_error:
                        # The lock stays held; the retry still goes out
                        logger.error("job_retry_not_recorded", error=str(store_error))
                    logger.warning(
                        "job_retry_scheduled",
                        error=error,
                        error_type=type(e).__name__,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        retry_in_seconds=countdown
                    )
                    record_job_outcome("retry")
                    return WorkerResult(JobOutcome.RETRY, message.job_id, error=error, retry_in=countdown)

                logger.error("job_retries_exhausted", error=error, attempts=attempt + 1)
                return self._dead_letter(message, error, reason="retries_exhausted", attempt=attempt)

            finally:
                active_jobs_gauge.dec()

    def _transform(self, message: JobMessage) -> Dict[str, Any]:
        source = self.storage.read(message.source_path)
        result = self.executor.execute(source, message.transformations)

        stem = Path(message.original_filename).stem or message.image_id
        path = self.storage.upload(result.data, f"{stem}.{result.format}", folder=self.output_folder)
        return output_descriptor(path, result.format, result.width, result.height, result.size_bytes)

    def _complete(self, message: JobMessage, output: Dict[str, Any]) -> WorkerResult:
        history_entry = {
            "jobId": message.job_id,
            "transformations": message.transformations.to_payload(),
            "output": output,
            "completedAt": utc_now().isoformat(),
        }
        try:
            self.state.complete(message.job_id, message.image_id, result=output, history_entry=history_entry)
        except InvalidTransitionError:
            # Lost the race against another delivery; drop our copy
            self.storage.delete(output["path"])
            raise

        self.cache.set(canonical_key(message.image_id, message.transformations), output["path"])

        logger.info("job_completed", path=output["path"], size_bytes=output["size"])
        record_job_outcome("completed")
        return WorkerResult(JobOutcome.COMPLETED, message.job_id, output=output)

    def _bookkeeping_retry(self, message: JobMessage, attempt: int, error: str) -> WorkerResult:
        """
        The metadata store failed while recording an outcome. Dead-lettering
        now would leave the job processing and the image locked, so the
        message goes back on the queue until the outcome can be written.
        """
        countdown = self.retry_countdown(min(attempt, self.max_retries))
        logger.error("job_bookkeeping_failed", error=error, attempt=attempt, retry_in_seconds=countdown)
        record_job_outcome("retry")
        return WorkerResult(JobOutcome.RETRY, message.job_id, error=error, retry_in=countdown)

    def _dead_letter(self, message: JobMessage, error: str, reason: str, attempt: int = 0) -> WorkerResult:
        try:
            self.state.fail(message.job_id, message.image_id, error)
        except InvalidTransitionError as e:
            logger.warning("job_already_terminal", error=e.message)
        except SQLAlchemyError as e:
            return self._bookkeeping_retry(message, attempt, str(e))

        record_dead_letter(reason)
        record_job_outcome("failed")
        return WorkerResult(JobOutcome.DEAD_LETTER, message.job_id, error=error)
