"""Shared test fixtures."""
import math
from typing import Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from runtrack.models.store import StoredValue  # noqa: F401
from runtrack.models.location import LocationFix
from runtrack.storage.kv import SqlKeyValueStore
from runtrack.storage.upload_queue import OfflineUploadQueue

# Metres per degree of latitude on the filter's sphere (R = 6 371 000 m)
METERS_PER_DEGREE_LAT = 6_371_000.0 * math.pi / 180.0

BASE_LAT = 37.5665
BASE_LON = 126.9780
T0 = 1_740_000_000_000


def fix_at(
    meters_north: float,
    t_ms: int,
    accuracy: Optional[float] = 5.0,
    speed: Optional[float] = None,
) -> LocationFix:
    """A fix `meters_north` metres due north of the base point."""
    return LocationFix(
        latitude=BASE_LAT + meters_north / METERS_PER_DEGREE_LAT,
        longitude=BASE_LON,
        timestamp_millis=t_ms,
        speed_meters_per_second=speed,
        accuracy_meters=accuracy,
    )


@pytest.fixture(name="make_fix")
def make_fix_fixture():
    """Factory for fixes along a straight north-bound line."""
    return fix_at


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="kv_store")
def kv_store_fixture(engine) -> SqlKeyValueStore:
    return SqlKeyValueStore(engine)


@pytest.fixture(name="upload_queue")
def upload_queue_fixture(kv_store) -> OfflineUploadQueue:
    """Queue with a deterministic clock: each enqueue is 1 s after the last."""
    ticks = iter(range(T0, T0 + 10_000_000, 1000))
    return OfflineUploadQueue(kv_store, max_attempts=3, clock=lambda: next(ticks))
