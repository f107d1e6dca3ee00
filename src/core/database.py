from pathlib import Path

from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.imagery.models import ImageRecord, TransformationJob  # noqa: F401


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the engine for the metadata store.

    SQLite connections are shared between the API thread pool and request
    handlers, so same-thread checking is turned off; in-memory databases use
    a single static connection.
    """
    url = make_url(database_url)
    kwargs = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if not url.database or url.database == ":memory:":
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True

    return create_engine(url, **kwargs)


def create_db_and_tables(engine: Engine):
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(engine, checkfirst=True)
