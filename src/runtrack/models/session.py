"""Running session data models: lifecycle state, segments and the session record."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Tuple

from runtrack.models.location import LocationFix


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Segment:
    """
    One fixed-distance slice of a run (10 m by default).

    Segments are appended to the session in order and never mutated.
    Biometric fields are None when no sensor reported a value.
    """

    id: int                             # sequential, starts at 1
    distance_meters: float
    duration_seconds: float             # wall-clock, includes paused time
    start_timestamp_millis: int
    order_index: int                    # id - 1
    heart_rate: Optional[float] = None  # bpm
    cadence: Optional[float] = None     # steps per minute
    calories: Optional[int] = None      # even share of the session estimate
    path: Tuple[LocationFix, ...] = ()


@dataclass
class RunningSession:
    """
    The in-progress (or completed) record of one run.

    Owned and mutated only by the session state machine; everything handed
    outside of it is a snapshot().
    """

    id: str
    start_timestamp_millis: int
    state: SessionState = SessionState.RUNNING
    total_distance_meters: float = 0.0
    elapsed_seconds: float = 0.0        # excludes paused time
    segments: List[Segment] = field(default_factory=list)
    last_heart_rate: Optional[float] = None
    last_cadence: Optional[float] = None
    last_calorie_estimate: Optional[float] = None
    shoe_id: Optional[int] = None
    is_placeholder_id: bool = False     # remote begin failed, id is local

    def snapshot(self) -> "RunningSession":
        """Independent copy; segments are immutable so a shallow list copy is enough."""
        return replace(self, segments=list(self.segments))

    @property
    def segment_distance_sum(self) -> float:
        return sum(s.distance_meters for s in self.segments)
