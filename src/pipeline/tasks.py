"""
Celery Tasks for the Transformation Pipeline

One task consumes the transformation queue. It delegates to
TransformationWorker and maps the outcome onto the broker:

- completed / skipped -> return (late ack)
- retry               -> self.retry with the worker's countdown; the retry
                         count travels with the message
- dead_letter         -> Reject(requeue=False), routed by the queue's
                         dead-letter exchange

Each worker process opens its own ServiceContainer on start and closes it on
shutdown.
"""

from contextlib import ExitStack
from typing import Optional, Dict, Any

from celery.exceptions import Reject
from celery.signals import worker_process_init, worker_process_shutdown, worker_shutdown

from src.core.celery_app import celery_app, TRANSFORM_TASK_NAME
from src.core.config import settings
from src.core.container import ServiceContainer, open_container
from src.core.logging import get_logger, setup_logging, clear_job_context
from src.pipeline.worker import JobOutcome, TransformationWorker

logger = get_logger(__name__)

_stack: Optional[ExitStack] = None
_container: Optional[ServiceContainer] = None


def open_worker_container() -> ServiceContainer:
    global _stack, _container
    if _container is None:
        _stack = ExitStack()
        _container = _stack.enter_context(open_container(settings))
        logger.info("worker_container_opened")
    return _container


def close_worker_container():
    global _stack, _container
    if _stack is not None:
        _stack.close()
        logger.info("worker_container_closed")
    _stack = None
    _container = None


@worker_process_init.connect
def _on_worker_process_init(**kwargs):
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT_JSON)
    open_worker_container()


@worker_process_shutdown.connect
def _on_worker_process_shutdown(**kwargs):
    close_worker_container()


@worker_shutdown.connect
def _on_worker_shutdown(**kwargs):
    close_worker_container()


def get_worker() -> TransformationWorker:
    # Solo pools never send worker_process_init, so open lazily as well
    return open_worker_container().worker


@celery_app.task(
    bind=True,
    name=TRANSFORM_TASK_NAME,
    acks_late=True,
    max_retries=None,
)
def process_transformation(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Celery task for one transformation job.
    """
    try:
        result = get_worker().handle(payload, attempt=self.request.retries)
    finally:
        clear_job_context()

    if result.outcome == JobOutcome.RETRY:
        raise self.retry(countdown=result.retry_in, max_retries=None)

    if result.outcome == JobOutcome.DEAD_LETTER:
        raise Reject(result.error, requeue=False)

    return result.to_dict()
