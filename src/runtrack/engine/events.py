"""
Engine events and observer channels.

Two producers feed the state machine's single event queue:
  - location samples (push callbacks in the foreground, buffer polling in
    the background): FixReceived
  - the periodic timer: TimerTick

Outward notifications go through EventChannel instances, one per concern.
subscribe() returns the unsubscribe handle.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from runtrack.models.location import LocationFix
from runtrack.models.session import SessionState
from runtrack.sensors.types import ABSENT, Reading
from runtrack.tracking.pace import ZERO_PACE, PaceData

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ─── Queue events ─────────────────────────────────────────────────────────────

class FixOrigin(str, Enum):
    PUSH = "push"
    BUFFER = "buffer"


@dataclass(frozen=True)
class FixReceived:
    fix: LocationFix
    origin: FixOrigin = FixOrigin.PUSH


@dataclass(frozen=True)
class TimerTick:
    pass


# ─── Outward notifications ────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrackingSnapshot:
    state: SessionState
    total_distance_meters: float
    elapsed_seconds: float
    average_pace: PaceData = ZERO_PACE
    instant_pace: PaceData = ZERO_PACE
    speed_kmh: float = 0.0
    heart_rate: Reading = ABSENT
    cadence: Reading = ABSENT
    calories: Optional[float] = None
    segment_count: int = 0


class UploadStatus(str, Enum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    STORAGE_FAILED = "storage_failed"


@dataclass(frozen=True)
class UploadOutcome:
    session_id: str
    status: UploadStatus
    confirmed: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class EventChannel(Generic[T]):
    """Observer list for one kind of notification."""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def publish(self, value: T) -> None:
        """Deliver to every subscriber; one failing subscriber does not stop the rest."""
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("%s subscriber raised", self.name)

    def __len__(self) -> int:
        return len(self._callbacks)
