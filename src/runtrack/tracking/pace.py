"""
Pace calculations and pace formatting utilities.

Two paces are tracked during a session:
  - average pace: elapsed (non-paused) seconds per kilometre,
  - instant pace: distance covered over a short sliding window of
    (timestamp, total distance) snapshots, which smooths single-fix jitter.

A pace of zero means "no pace" (standing still, or not enough data).
"""
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple

DEFAULT_WINDOW_SECONDS = 10.0


@dataclass(frozen=True)
class PaceData:
    minutes: int
    seconds: int
    total_seconds: int

    def __str__(self) -> str:
        return format_pace(self.total_seconds)


ZERO_PACE = PaceData(minutes=0, seconds=0, total_seconds=0)


@dataclass(frozen=True)
class PaceSignal:
    """Published for every fix accepted for pace."""

    timestamp_millis: int
    speed_meters_per_second: float
    accuracy_meters: Optional[float]
    distance_delta_meters: float


def pace_from_seconds_per_km(seconds_per_km: float) -> PaceData:
    if seconds_per_km <= 0:
        return ZERO_PACE
    total = int(seconds_per_km)
    return PaceData(minutes=total // 60, seconds=total % 60, total_seconds=total)


def pace_from_speed(speed_mps: Optional[float]) -> PaceData:
    """Pace for a speed in m/s. None or non-positive speed → ZERO_PACE."""
    if not speed_mps or speed_mps <= 0:
        return ZERO_PACE
    return pace_from_seconds_per_km(1000.0 / speed_mps)


def average_pace(distance_meters: float, elapsed_seconds: float) -> PaceData:
    if distance_meters <= 0 or elapsed_seconds <= 0:
        return ZERO_PACE
    return pace_from_seconds_per_km(elapsed_seconds / distance_meters * 1000.0)


def format_pace(total_seconds: int) -> str:
    """Format seconds-per-km as 'M:SS /km' ('--' for zero pace)."""
    if total_seconds <= 0:
        return "--"
    return f"{total_seconds // 60}:{total_seconds % 60:02d} /km"


class InstantPaceWindow:
    """Sliding window of (timestamp_ms, total_distance) snapshots."""

    def __init__(self, window_seconds: float = DEFAULT_WINDOW_SECONDS):
        self.window_ms = int(window_seconds * 1000)
        self._snapshots: Deque[Tuple[int, float]] = deque()

    def reset(self) -> None:
        self._snapshots.clear()

    def add(self, timestamp_ms: int, total_distance_meters: float) -> PaceData:
        """Record a snapshot and return the pace over the current window."""
        self._snapshots.append((timestamp_ms, total_distance_meters))
        cutoff = timestamp_ms - self.window_ms
        while self._snapshots and self._snapshots[0][0] < cutoff:
            self._snapshots.popleft()
        return self.current()

    def current(self) -> PaceData:
        if len(self._snapshots) < 2:
            return ZERO_PACE

        oldest_ts, oldest_dist = self._snapshots[0]
        newest_ts, newest_dist = self._snapshots[-1]
        distance_delta = newest_dist - oldest_dist
        elapsed_s = (newest_ts - oldest_ts) / 1000.0

        if distance_delta <= 0 or elapsed_s < 1:
            return ZERO_PACE
        return pace_from_seconds_per_km(elapsed_s / distance_delta * 1000.0)
