"""Durable key-value table backing the offline queue and the background location buffer."""
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredValue(SQLModel, table=True):
    """One row per key. value is a JSON document written in a single commit."""

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
