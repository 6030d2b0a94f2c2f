from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlmodel import SQLModel

from upscaler.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from upscaler.modules.imagery.models import ImageJob  # noqa: F401


def create_db_engine(database_url: str = None) -> Engine:
    """Create a synchronous engine; workers are threads, not coroutines."""
    url = make_url(database_url or settings.DATABASE_URL)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # Worker threads share the engine
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)


def create_db_and_tables(engine: Engine):
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(engine, checkfirst=True)


def ping_database(engine: Engine) -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
