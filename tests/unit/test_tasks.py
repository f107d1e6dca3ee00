from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Reject, Retry

from src.core.celery_app import TRANSFORM_TASK_NAME, build_queues, create_celery_app
from src.pipeline import tasks
from src.pipeline.worker import JobOutcome, WorkerResult


@pytest.fixture
def worker():
    worker = MagicMock()
    with patch.object(tasks, "get_worker", return_value=worker):
        yield worker


def test_completed_job_returns_summary(worker):
    worker.handle.return_value = WorkerResult(JobOutcome.COMPLETED, "job-1", output={"path": "processed/a.png"})

    result = tasks.process_transformation.apply(args=[{"jobId": "job-1"}]).get()

    assert result["outcome"] == "completed"
    assert result["output"] == {"path": "processed/a.png"}
    worker.handle.assert_called_once_with({"jobId": "job-1"}, attempt=0)


def test_retry_outcome_requests_celery_retry(worker):
    worker.handle.return_value = WorkerResult(JobOutcome.RETRY, "job-1", error="flaky", retry_in=20)

    with patch.object(tasks.process_transformation, "retry", side_effect=Retry("retry")) as retry:
        with pytest.raises(Retry):
            tasks.process_transformation.run({"jobId": "job-1"})

    retry.assert_called_once_with(countdown=20, max_retries=None)


def test_dead_letter_outcome_rejects_without_requeue(worker):
    worker.handle.return_value = WorkerResult(JobOutcome.DEAD_LETTER, "job-1", error="bad crop")

    with pytest.raises(Reject) as exc_info:
        tasks.process_transformation.run({"jobId": "job-1"})

    assert exc_info.value.requeue is False


def test_skipped_outcome_acks(worker):
    worker.handle.return_value = WorkerResult(JobOutcome.SKIPPED, "job-1")

    assert tasks.process_transformation.run({"jobId": "job-1"})["outcome"] == "skipped"


def test_task_is_registered_with_late_ack():
    task = tasks.process_transformation

    assert task.name == TRANSFORM_TASK_NAME
    assert task.acks_late is True


def test_queues_dead_letter_into_dlx(test_settings):
    main, dead = build_queues(test_settings)

    assert main.name == test_settings.TRANSFORM_QUEUE
    assert main.durable is True
    assert main.queue_arguments["x-dead-letter-exchange"] == test_settings.DEAD_LETTER_EXCHANGE
    assert main.queue_arguments["x-dead-letter-routing-key"] == test_settings.DEAD_LETTER_QUEUE
    assert dead.name == test_settings.DEAD_LETTER_QUEUE
    assert dead.exchange.name == test_settings.DEAD_LETTER_EXCHANGE


def test_celery_app_processes_one_message_at_a_time(test_settings):
    app = create_celery_app(test_settings)

    assert app.conf.worker_prefetch_multiplier == 1
    assert app.conf.task_acks_late is True
    assert app.conf.task_acks_on_failure_or_timeout is False
    assert app.conf.task_default_delivery_mode == "persistent"
