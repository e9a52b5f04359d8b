"""SQLModel engine singleton for the durable key-value store."""
from typing import Optional

from sqlmodel import SQLModel, create_engine

from runtrack.config import get_settings

_engine = None


def build_engine(database_url: str):
    """Create an engine and make sure the key-value table exists."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # queue writes run on executor threads
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, connect_args=connect_args)
    from runtrack.models.store import StoredValue  # noqa
    SQLModel.metadata.create_all(engine)
    return engine


def get_engine(database_url: Optional[str] = None):
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = build_engine(database_url or get_settings().database_url)
    return _engine
