from unittest.mock import MagicMock

import pytest
from kombu.exceptions import OperationalError

from src.core.celery_app import TRANSFORM_TASK_NAME
from src.core.exceptions import QueueUnavailableError
from src.core.queue import JobQueue
from src.modules.imagery.schemas import JobMessage


@pytest.fixture
def message():
    return JobMessage(
        image_id="img-1",
        owner_id="user-1",
        source_path="uploads/a.png",
        original_filename="a.png",
        transformations={"rotate": 90},
    )


def test_publish_sends_payload_with_job_id_as_task_id(message):
    app = MagicMock()
    queue = JobQueue(app, queue_name="image_transformations")

    assert queue.publish(message) == message.job_id

    args, kwargs = app.send_task.call_args
    assert args[0] == TRANSFORM_TASK_NAME
    assert kwargs["args"] == [message.to_payload()]
    assert kwargs["queue"] == "image_transformations"
    assert kwargs["task_id"] == message.job_id


@pytest.mark.parametrize("error", [OperationalError("connection refused"), ConnectionRefusedError()])
def test_publish_failure_raises_queue_unavailable(message, error):
    app = MagicMock()
    app.send_task.side_effect = error
    queue = JobQueue(app, queue_name="image_transformations")

    with pytest.raises(QueueUnavailableError) as exc_info:
        queue.publish(message)

    assert exc_info.value.code == 503
    assert exc_info.value.job_id == message.job_id


def test_wait_until_ready_retries_forever_at_fixed_interval():
    app = MagicMock()
    queue = JobQueue(app, queue_name="q", retry_interval=2.5)

    queue.wait_until_ready()

    conn = app.connection_for_write.return_value.__enter__.return_value
    kwargs = conn.ensure_connection.call_args.kwargs
    assert kwargs["max_retries"] is None
    assert kwargs["interval_start"] == 2.5
    assert kwargs["interval_max"] == 2.5
    assert kwargs["interval_step"] == 0


def test_message_round_trip_through_payload(message):
    restored = JobMessage.from_payload(message.to_payload())

    assert restored == message
