"""
Worker entry point.

    python -m src.core.worker

Starts a Celery worker consuming the transformation queue with one job in
flight at a time.
"""

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.logging import setup_logging, get_logger

logger = get_logger(__name__)


def main():
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT_JSON)
    logger.info(
        "worker_starting",
        queue=settings.TRANSFORM_QUEUE,
        max_retries=settings.JOB_MAX_RETRIES
    )
    celery_app.worker_main([
        "worker",
        "--loglevel", settings.LOG_LEVEL,
        "--concurrency", "1",
        "--prefetch-multiplier", "1",
        "--queues", settings.TRANSFORM_QUEUE,
    ])


if __name__ == "__main__":
    main()
