"""
Celery Application Configuration

Configures Celery with:
- A durable transformation queue on a durable direct exchange
- A dead-letter exchange/queue for rejected jobs
- One message in flight per worker, acknowledged only after the job ends
- Unlimited broker reconnection on startup
"""

from celery import Celery
from kombu import Exchange, Queue

from src.core.config import settings, Settings

TRANSFORM_TASK_NAME = "src.pipeline.tasks.process_transformation"


def build_queues(config: Settings):
    """Main queue (dead-lettering into the DLX) plus the dead-letter queue itself."""
    transform_exchange = Exchange(config.TRANSFORM_EXCHANGE, type="direct", durable=True)
    dead_letter_exchange = Exchange(config.DEAD_LETTER_EXCHANGE, type="direct", durable=True)

    return (
        Queue(
            config.TRANSFORM_QUEUE,
            exchange=transform_exchange,
            routing_key=config.TRANSFORM_QUEUE,
            durable=True,
            queue_arguments={
                "x-dead-letter-exchange": config.DEAD_LETTER_EXCHANGE,
                "x-dead-letter-routing-key": config.DEAD_LETTER_QUEUE,
            },
        ),
        Queue(
            config.DEAD_LETTER_QUEUE,
            exchange=dead_letter_exchange,
            routing_key=config.DEAD_LETTER_QUEUE,
            durable=True,
        ),
    )


def create_celery_app(config: Settings = settings) -> Celery:
    app = Celery(
        "imagery_transform",
        broker=config.CELERY_BROKER_URL,
        include=[
            "src.pipeline.tasks",
        ]
    )

    app.conf.update(
        # Task settings
        task_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,

        # Job state lives in the metadata store, not in a result backend
        task_ignore_result=True,

        task_time_limit=600,  # 10 minute hard limit
        task_soft_time_limit=540,  # 9 minute soft limit

        # Worker settings
        worker_prefetch_multiplier=1,
        worker_concurrency=1,

        # Queue definitions
        task_queues=build_queues(config),
        task_default_queue=config.TRANSFORM_QUEUE,
        task_default_exchange=config.TRANSFORM_EXCHANGE,
        task_default_routing_key=config.TRANSFORM_QUEUE,
        task_default_delivery_mode="persistent",

        # Task routing
        task_routes={
            TRANSFORM_TASK_NAME: {
                "queue": config.TRANSFORM_QUEUE,
                "routing_key": config.TRANSFORM_QUEUE,
            },
        },

        # Retry settings
        task_default_retry_delay=config.JOB_RETRY_DELAY_SECONDS,
        task_max_retries=config.JOB_MAX_RETRIES,

        # Late acknowledgment for reliability; failures are rejected
        # explicitly so they reach the dead-letter queue
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_acks_on_failure_or_timeout=False,

        # Broker startup
        broker_connection_retry_on_startup=True,
        broker_connection_max_retries=None,
    )
    return app


celery_app = create_celery_app()
