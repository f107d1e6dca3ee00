"""
Job State Machine

    pending ──► processing ──► completed
       │            │  ▲
       │            └──┘ (retry)
       └────────────┴────► failed

Status only ever moves forward; completed and failed are terminal. Every
move is a compare-and-set in the metadata store, so a redelivered message or
a racing worker cannot drag a finished job back.
"""

from enum import Enum
from typing import Optional, Dict, Any, Set

from sqlalchemy import func

from src.core.exceptions import InvalidTransitionError
from src.core.logging import get_logger
from src.modules.imagery.models import TransformationJob, utc_now
from src.modules.imagery.repositories import ImageRepository, JobRepository
from src.modules.imagery.schemas import JobMessage

logger = get_logger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

TERMINAL_STATES = {JobStatus.COMPLETED, JobStatus.FAILED}


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]


def sources_of(target: JobStatus) -> Set[str]:
    """Statuses from which ``target`` may be reached."""
    return {status.value for status, targets in TRANSITIONS.items() if target in targets}


class JobStateMachine:
    """Moves jobs (and the image processing flag) through their lifecycle."""

    def __init__(self, jobs: JobRepository, images: ImageRepository):
        self.jobs = jobs
        self.images = images

    def begin(self, message: JobMessage) -> TransformationJob:
        """Persist a new job in the pending state."""
        job = TransformationJob(
            id=message.job_id,
            image_id=message.image_id,
            owner_id=message.owner_id,
            source_path=message.source_path,
            original_filename=message.original_filename,
            spec=message.transformations.to_payload(),
            status=JobStatus.PENDING.value,
            created_at=message.created_at,
        )
        job = self.jobs.create(job)
        logger.info("job_created", job_id=job.id, image_id=job.image_id)
        return job

    def _move(self, job_id: str, target: JobStatus, **values: Any):
        if not self.jobs.transition(job_id, sources_of(target), target.value, **values):
            job = self.jobs.get(job_id)
            raise InvalidTransitionError(job_id, job.status if job else None, target.value)
        logger.info("job_status_changed", job_id=job_id, status=target.value)

    def start(self, job_id: str, image_id: str):
        """pending|processing -> processing, counting the attempt."""
        self._move(
            job_id,
            JobStatus.PROCESSING,
            attempts=TransformationJob.attempts + 1,
            started_at=func.coalesce(TransformationJob.started_at, utc_now()),
        )
        self.images.update_status(image_id, JobStatus.PROCESSING.value)

    def complete(self, job_id: str, image_id: str, result: Dict[str, Any], history_entry: Dict[str, Any]):
        """
        Mark the job completed, then append the history entry and release the
        image lock. Raises InvalidTransitionError (and writes nothing to the
        image) if the job already reached a terminal state.
        """
        self._move(
            job_id,
            JobStatus.COMPLETED,
            result=result,
            error=None,
            completed_at=utc_now(),
        )
        self.images.complete(image_id, history_entry)

    def fail(self, job_id: str, image_id: str, error: str):
        """Mark the job failed and release the image lock with the error recorded."""
        self._move(
            job_id,
            JobStatus.FAILED,
            error=error,
            completed_at=utc_now(),
        )
        self.images.fail(image_id, error)

    def note_retry(self, job_id: str, image_id: str, error: str):
        """Keep the job processing (and the image locked) but record the error."""
        self.jobs.note_error(job_id, error)
        self.images.update_status(image_id, JobStatus.PROCESSING.value, error)

    def is_terminal(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        return job is not None and JobStatus(job.status) in TERMINAL_STATES

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.jobs.get(job_id)
        return job.to_response_dict() if job else None
