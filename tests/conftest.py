import io
from contextlib import nullcontext
from typing import AsyncGenerator, Iterator
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from src.core.cache import MemoryResultCache
from src.core.config import Settings
from src.core.container import ServiceContainer, open_container
from src.core.database import build_engine, create_db_and_tables
from src.core.queue import JobQueue
from src.core.storage import LocalStorage
from src.main import create_app
from src.pipeline.executor import PipelineExecutor

OWNER = "user-1"


def make_image_bytes(width=100, height=80, color=(200, 30, 30), fmt="PNG", mode="RGB") -> bytes:
    image = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        CACHE_BACKEND="memory",
        JOB_MAX_RETRIES=3,
        JOB_RETRY_DELAY_SECONDS=5,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "storage"))


@pytest.fixture
def cache() -> MemoryResultCache:
    return MemoryResultCache(ttl=3600, max_entries=100)


@pytest.fixture
def executor() -> PipelineExecutor:
    return PipelineExecutor()


@pytest.fixture
def queue() -> MagicMock:
    queue = MagicMock(spec=JobQueue)
    queue.publish.side_effect = lambda message: message.job_id
    return queue


@pytest.fixture
def container(test_settings, engine, storage, cache, queue) -> Iterator[ServiceContainer]:
    with open_container(test_settings, engine=engine, storage=storage, cache=cache, queue=queue) as c:
        yield c


@pytest.fixture
def registered_image(container):
    """A 1000x800 PNG registered for OWNER."""
    return container.service.register_image(
        OWNER,
        "photo.png",
        "image/png",
        make_image_bytes(1000, 800)
    )


@pytest.fixture
async def client(container) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(open_services=lambda: nullcontext(container))
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

