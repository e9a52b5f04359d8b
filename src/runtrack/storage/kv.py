"""
Durable key-value store.

The engine needs only put/get/delete (plus a prefix listing for the queue).
SqlKeyValueStore keeps one StoredValue row per key and writes each value in
its own transaction, so a record is either fully written or not at all.
put() is a single INSERT ... ON CONFLICT DO UPDATE statement, so concurrent
writers to the same key never collide on the primary key. The store targets
SQLite. Values are JSON-serializable Python objects.
"""
import json
from typing import Any, List, Optional, Protocol

from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from runtrack.engine.errors import StorageFailure
from runtrack.models.store import StoredValue, utcnow


class KeyValueStore(Protocol):
    def put(self, key: str, value: Any) -> None:
        ...

    def get(self, key: str) -> Optional[Any]:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...


class SqlKeyValueStore:
    """KeyValueStore over a SQLModel engine. Errors surface as StorageFailure."""

    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (see storage.engine.get_engine) with the
                StoredValue table created.
        """
        self.engine = engine

    def put(self, key: str, value: Any) -> None:
        document = json.dumps(value)
        try:
            stmt = insert(StoredValue).values(key=key, value=document, updated_at=utcnow())
            stmt = stmt.on_conflict_do_update(
                index_elements=["key"],
                set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
            )
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"put {key!r} failed: {exc}") from exc

    def get(self, key: str) -> Optional[Any]:
        try:
            with Session(self.engine) as s:
                row = s.get(StoredValue, key)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"get {key!r} failed: {exc}") from exc
        if row is None:
            return None
        return json.loads(row.value)

    def delete(self, key: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(StoredValue).where(StoredValue.key == key))
        except SQLAlchemyError as exc:
            raise StorageFailure(f"delete {key!r} failed: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with `prefix`, in key order."""
        try:
            with Session(self.engine) as s:
                stmt = select(StoredValue.key).order_by(StoredValue.key)
                if prefix:
                    stmt = stmt.where(StoredValue.key.startswith(prefix, autoescape=True))
                return list(s.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageFailure(f"listing {prefix!r} failed: {exc}") from exc
