"""
Job Queue (producer side)

Publishes transformation jobs to the durable Celery queue. Publishing is
fire-and-forget: once the broker accepts the message the producer is done.
"""

from typing import Dict, Any

from celery import Celery
from kombu.exceptions import OperationalError

from src.core.celery_app import TRANSFORM_TASK_NAME
from src.core.exceptions import QueueUnavailableError
from src.core.logging import get_logger
from src.modules.imagery.schemas import JobMessage

logger = get_logger(__name__)


class JobQueue:
    def __init__(
        self,
        app: Celery,
        queue_name: str,
        retry_interval: float = 5.0,
        publish_retries: int = 3
    ):
        self.app = app
        self.queue_name = queue_name
        self.retry_interval = retry_interval
        self.publish_retries = publish_retries

    def wait_until_ready(self):
        """
        Block until the broker accepts a connection, retrying at a fixed
        interval for as long as it takes.
        """
        def _on_error(exc, interval):
            logger.warning("broker_unavailable", error=str(exc), retry_in_seconds=interval)

        with self.app.connection_for_write() as conn:
            conn.ensure_connection(
                errback=_on_error,
                max_retries=None,
                interval_start=self.retry_interval,
                interval_step=0,
                interval_max=self.retry_interval,
            )
        logger.info("broker_connected", queue=self.queue_name)

    def publish(self, message: JobMessage) -> str:
        """
        Publish a job message. Returns the job id.

        Raises:
            QueueUnavailableError: the broker did not accept the message
        """
        payload: Dict[str, Any] = message.to_payload()
        try:
            self.app.send_task(
                TRANSFORM_TASK_NAME,
                args=[payload],
                queue=self.queue_name,
                routing_key=self.queue_name,
                task_id=message.job_id,
                retry=True,
                retry_policy={
                    "max_retries": self.publish_retries,
                    "interval_start": 0,
                    "interval_step": 0.5,
                    "interval_max": 2,
                },
            )
        except (OperationalError, OSError) as e:
            logger.error("job_publish_failed", job_id=message.job_id, error=str(e))
            raise QueueUnavailableError(f"Could not publish job: {e}", job_id=message.job_id)

        logger.info("job_published", job_id=message.job_id, image_id=message.image_id, queue=self.queue_name)
        return message.job_id
