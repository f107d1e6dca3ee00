"""
Service Container

Builds every collaborator of the transformation core from Settings and tears
them down again. The API lifespan and each Celery worker process own one
container; nothing here is a module-level singleton.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from celery import Celery
from sqlalchemy.engine import Engine

from src.core.cache import IResultCache, MemoryResultCache, RedisResultCache
from src.core.config import Settings, settings
from src.core.database import build_engine, create_db_and_tables
from src.core.exceptions import CircuitBreaker
from src.core.logging import get_logger
from src.core.queue import JobQueue
from src.core.storage import IStorage, LocalStorage
from src.modules.imagery.repositories import ImageRepository, JobRepository
from src.modules.imagery.services import TransformationService
from src.modules.imagery.state import JobStateMachine
from src.pipeline.executor import PipelineExecutor
from src.pipeline.worker import TransformationWorker

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    storage: IStorage
    cache: IResultCache
    executor: PipelineExecutor
    images: ImageRepository
    jobs: JobRepository
    state: JobStateMachine
    queue: JobQueue
    service: TransformationService
    worker: TransformationWorker

    def close(self):
        self.cache.close()
        self.engine.dispose()
        logger.info("container_closed")


def build_cache(config: Settings) -> IResultCache:
    if config.CACHE_BACKEND == "memory":
        return MemoryResultCache(ttl=config.CACHE_TTL_SECONDS, max_entries=config.CACHE_MAX_ENTRIES)

    breaker = CircuitBreaker(
        "result_cache",
        failure_threshold=config.CACHE_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=config.CACHE_CIRCUIT_RECOVERY_SECONDS,
    )
    return RedisResultCache.from_url(
        config.REDIS_URL,
        ttl=config.CACHE_TTL_SECONDS,
        max_entries=config.CACHE_MAX_ENTRIES,
        breaker=breaker,
    )


def build_queue(config: Settings, app: Optional[Celery] = None) -> JobQueue:
    if app is None:
        from src.core.celery_app import celery_app as app
    return JobQueue(
        app,
        queue_name=config.TRANSFORM_QUEUE,
        retry_interval=config.BROKER_RETRY_INTERVAL_SECONDS,
    )


@contextmanager
def open_container(
    config: Settings = settings,
    engine: Optional[Engine] = None,
    storage: Optional[IStorage] = None,
    cache: Optional[IResultCache] = None,
    queue: Optional[JobQueue] = None
) -> Iterator[ServiceContainer]:
    """
    Build a container, yield it and always close it.

    Any collaborator may be passed in to replace the one built from settings.
    """
    engine = engine or build_engine(config.DATABASE_URL)
    create_db_and_tables(engine)

    storage = storage or LocalStorage(config.LOCAL_STORAGE_PATH)
    cache = cache or build_cache(config)
    queue = queue or build_queue(config)
    executor = PipelineExecutor()

    images = ImageRepository(engine)
    jobs = JobRepository(engine)
    state = JobStateMachine(jobs, images)

    container = ServiceContainer(
        settings=config,
        engine=engine,
        storage=storage,
        cache=cache,
        executor=executor,
        images=images,
        jobs=jobs,
        state=state,
        queue=queue,
        service=TransformationService(images, jobs, state, storage, cache, executor, queue, config),
        worker=TransformationWorker(
            state,
            storage,
            cache,
            executor,
            max_retries=config.JOB_MAX_RETRIES,
            retry_delay=config.JOB_RETRY_DELAY_SECONDS,
            output_folder=config.PROCESSED_FOLDER,
        ),
    )
    logger.info("container_opened", cache_backend=cache.backend_name)
    try:
        yield container
    finally:
        container.close()
