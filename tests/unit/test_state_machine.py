import pytest

from src.core.exceptions import InvalidTransitionError
from src.modules.imagery.models import ImageRecord
from src.modules.imagery.repositories import ImageRepository, JobRepository
from src.modules.imagery.schemas import JobMessage
from src.modules.imagery.state import (
    JobStateMachine,
    JobStatus,
    TERMINAL_STATES,
    can_transition,
    sources_of,
)


@pytest.fixture
def images(engine):
    return ImageRepository(engine)


@pytest.fixture
def jobs(engine):
    return JobRepository(engine)


@pytest.fixture
def machine(jobs, images):
    return JobStateMachine(jobs, images)


@pytest.fixture
def image(images):
    return images.create(ImageRecord(
        owner_id="user-1",
        original_name="photo.png",
        filename="photo.png",
        mime_type="image/png",
        size=10,
        path="uploads/photo.png",
    ))


@pytest.fixture
def message(image):
    return JobMessage(
        image_id=image.id,
        owner_id="user-1",
        source_path=image.path,
        original_filename=image.original_name,
        transformations={"rotate": 90},
    )


def test_transition_table():
    assert can_transition("pending", "processing")
    assert can_transition("pending", "failed")
    assert can_transition("processing", "processing")
    assert can_transition("processing", "completed")
    assert not can_transition("pending", "completed")
    assert not can_transition("completed", "processing")
    assert not can_transition("failed", "processing")
    assert TERMINAL_STATES == {JobStatus.COMPLETED, JobStatus.FAILED}
    assert sources_of(JobStatus.COMPLETED) == {"processing"}


class TestProcessingLock:
    def test_only_one_acquire_succeeds(self, images, image):
        assert images.try_acquire_processing(image.id) is True
        assert images.try_acquire_processing(image.id) is False

        record = images.find_by_id(image.id)
        assert record.is_processing is True
        assert record.processing_status == "pending"

    def test_release_allows_reacquire(self, images, image):
        images.try_acquire_processing(image.id)
        images.release_processing(image.id, status="failed", error="boom")

        record = images.find_by_id(image.id)
        assert record.is_processing is False
        assert record.processing_error == "boom"
        assert images.try_acquire_processing(image.id) is True

    def test_unknown_image_is_not_acquired(self, images):
        assert images.try_acquire_processing("missing") is False


class TestJobStateMachine:
    def test_happy_path(self, machine, images, message, image):
        images.try_acquire_processing(image.id)
        machine.begin(message)
        assert machine.snapshot(message.job_id)["status"] == "pending"

        machine.start(message.job_id, image.id)
        snapshot = machine.snapshot(message.job_id)
        assert snapshot["status"] == "processing"
        assert snapshot["attempts"] == 1
        assert snapshot["startedAt"] is not None

        machine.complete(
            message.job_id,
            image.id,
            result={"path": "processed/out.png"},
            history_entry={"jobId": message.job_id}
        )
        snapshot = machine.snapshot(message.job_id)
        assert snapshot["status"] == "completed"
        assert snapshot["result"] == {"path": "processed/out.png"}
        assert machine.is_terminal(message.job_id)

        record = images.find_by_id(image.id)
        assert record.is_processing is False
        assert record.processing_status == "completed"
        assert record.transformations == [{"jobId": message.job_id}]
        assert record.last_transformed_at is not None

    def test_restart_counts_attempts_and_keeps_started_at(self, machine, message, image):
        machine.begin(message)
        machine.start(message.job_id, image.id)
        first_started = machine.snapshot(message.job_id)["startedAt"]

        machine.start(message.job_id, image.id)

        snapshot = machine.snapshot(message.job_id)
        assert snapshot["attempts"] == 2
        assert snapshot["startedAt"] == first_started

    def test_completed_is_terminal(self, machine, message, image):
        machine.begin(message)
        machine.start(message.job_id, image.id)
        machine.complete(message.job_id, image.id, result={}, history_entry={})

        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.start(message.job_id, image.id)
        with pytest.raises(InvalidTransitionError):
            machine.fail(message.job_id, image.id, "late failure")

        assert exc_info.value.details["current"] == "completed"
        assert machine.snapshot(message.job_id)["status"] == "completed"

    def test_failed_is_terminal_and_releases_image(self, machine, images, message, image):
        images.try_acquire_processing(image.id)
        machine.begin(message)
        machine.fail(message.job_id, image.id, "broker down")

        with pytest.raises(InvalidTransitionError):
            machine.complete(message.job_id, image.id, result={}, history_entry={"x": 1})

        record = images.find_by_id(image.id)
        assert record.is_processing is False
        assert record.processing_status == "failed"
        assert record.processing_error == "broker down"
        # A rejected completion writes nothing to the image history
        assert record.transformations == []

    def test_pending_cannot_complete(self, machine, message, image):
        machine.begin(message)

        with pytest.raises(InvalidTransitionError):
            machine.complete(message.job_id, image.id, result={}, history_entry={})

    def test_unknown_job(self, machine):
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.start("missing", "missing")

        assert exc_info.value.details["current"] is None
        assert machine.snapshot("missing") is None
        assert machine.is_terminal("missing") is False

    def test_note_retry_keeps_lock(self, machine, images, message, image):
        images.try_acquire_processing(image.id)
        machine.begin(message)
        machine.start(message.job_id, image.id)

        machine.note_retry(message.job_id, image.id, "flaky disk")

        assert machine.snapshot(message.job_id)["error"] == "flaky disk"
        record = images.find_by_id(image.id)
        assert record.is_processing is True
        assert record.processing_status == "processing"
