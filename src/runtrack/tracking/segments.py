"""
Distance & segment engine.

Feeds each fix through the GPS filter, keeps the running total distance and
buckets accepted movement into fixed-length segments (10 m by default).

Segment boundaries:
  - A segment closes as soon as the distance accumulated since the last
    boundary reaches the threshold. Its distance is the accumulated value
    (it may overshoot the threshold: a 12 m step yields a 12 m segment).
  - On stop, any remaining distance becomes one final, possibly short,
    segment, so the sum of segment distances always equals the total.

Baseline policy (the fix the next one is measured from):
  - accepted fixes and the anchor fix become the baseline;
  - BELOW_MIN_DISTANCE and LOW_ACCURACY fixes do not, so sub-threshold
    steps add up instead of being dropped one at a time;
  - IMPLAUSIBLE_SPEED fixes do, so a bad baseline (typically a cold-start
    first fix) is replaced by the next fix instead of lingering until
    elapsed time makes the jump look plausible;
  - TIME_GAP_TOO_LARGE fixes re-anchor without crediting the gap;
  - INVALID_COORDINATE and INVALID_TIMESTAMP fixes are ignored entirely.

Per-segment calories are the session's cumulative estimate divided evenly
across the segments recorded so far. This is an approximation kept for
compatibility with the server's records, not a per-segment physiological
measurement.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from runtrack.models.location import LocationFix
from runtrack.models.session import Segment
from runtrack.tracking.gps_filter import (
    DEFAULT_GPS_FILTER_CONFIG,
    DISTANCE_EPSILON_M,
    FilterDecision,
    GpsFilterConfig,
    RejectReason,
    evaluate,
)

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_THRESHOLD_M = 10.0

# Steps built from metre offsets rarely sum to exactly the threshold.
THRESHOLD_EPSILON_M = DISTANCE_EPSILON_M

_IGNORED = (RejectReason.INVALID_COORDINATE, RejectReason.INVALID_TIMESTAMP)
_REANCHORS = (
    RejectReason.NO_PREVIOUS_SAMPLE,
    RejectReason.TIME_GAP_TOO_LARGE,
    RejectReason.IMPLAUSIBLE_SPEED,
)


@dataclass(frozen=True)
class BiometricSnapshot:
    """Sensor values in effect when a segment closes. None means unknown."""

    heart_rate: Optional[float] = None
    cadence: Optional[float] = None
    calories_total: Optional[float] = None


EMPTY_BIOMETRICS = BiometricSnapshot()

BiometricsArg = Union[BiometricSnapshot, Callable[[], BiometricSnapshot], None]


@dataclass(frozen=True)
class IngestResult:
    decision: FilterDecision
    closed_segment: Optional[Segment] = None


class SegmentEngine:
    """Single-session distance accumulator. Not thread-safe: the owner
    serializes calls."""

    def __init__(
        self,
        config: GpsFilterConfig = DEFAULT_GPS_FILTER_CONFIG,
        threshold_meters: float = DEFAULT_SEGMENT_THRESHOLD_M,
    ):
        self.config = config
        self.threshold_meters = threshold_meters

        self.previous_fix: Optional[LocationFix] = None
        self.total_distance_meters = 0.0
        self.distance_since_last_segment = 0.0
        self.path_buffer: List[LocationFix] = []
        self.segment_start_timestamp: Optional[int] = None
        self.segment_id_counter = 1
        self._segments: List[Segment] = []

    # ─── State ───────────────────────────────────────────────────────────────

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return tuple(self._segments)

    def start(self, now_ms: int) -> None:
        """Open the first segment at `now_ms` (session start)."""
        self.segment_start_timestamp = now_ms

    def reanchor(self) -> None:
        """Forget the comparison baseline; the next fix becomes a new anchor.

        Used after a pause so movement while paused is never credited.
        """
        self.previous_fix = None

    # ─── Ingestion ───────────────────────────────────────────────────────────

    def ingest(self, fix: LocationFix, biometrics: BiometricsArg = None) -> IngestResult:
        """Evaluate `fix` with the GPS filter and apply the decision."""
        decision = evaluate(self.previous_fix, fix, self.config)
        closed = self.apply(fix, decision, biometrics)
        return IngestResult(decision=decision, closed_segment=closed)

    def apply(
        self,
        fix: LocationFix,
        decision: FilterDecision,
        biometrics: BiometricsArg = None,
    ) -> Optional[Segment]:
        """
        Apply one filter decision.

        Returns:
            The segment closed by this fix, if the threshold was crossed.
        """
        if decision.reject_reason in _IGNORED:
            return None
        if self.segment_start_timestamp is None:
            self.segment_start_timestamp = fix.timestamp_millis

        if decision.accepted_for_path:
            self.path_buffer.append(fix)
        if decision.reject_reason in _REANCHORS:
            self.previous_fix = fix
        if not decision.accepted_for_distance:
            return None

        self.previous_fix = fix
        self.total_distance_meters += decision.distance_meters
        self.distance_since_last_segment += decision.distance_meters

        if self.distance_since_last_segment + THRESHOLD_EPSILON_M >= self.threshold_meters:
            return self._close_segment(fix.timestamp_millis, biometrics)
        return None

    def finalize(self, now_ms: int, biometrics: BiometricsArg = None) -> Optional[Segment]:
        """Close the trailing partial segment, if it holds any distance."""
        if self.distance_since_last_segment <= 0:
            return None
        if self.segment_start_timestamp is None:
            self.segment_start_timestamp = now_ms
        return self._close_segment(now_ms, biometrics)

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _close_segment(self, now_ms: int, biometrics: BiometricsArg) -> Segment:
        snapshot = _resolve_biometrics(biometrics)
        segment_id = self.segment_id_counter
        start_ms = self.segment_start_timestamp

        calories = None
        if snapshot.calories_total is not None:
            calories = round(snapshot.calories_total / (len(self._segments) + 1))

        segment = Segment(
            id=segment_id,
            distance_meters=self.distance_since_last_segment,
            duration_seconds=max(0.0, (now_ms - start_ms) / 1000.0),
            start_timestamp_millis=start_ms,
            order_index=segment_id - 1,
            heart_rate=snapshot.heart_rate,
            cadence=snapshot.cadence,
            calories=calories,
            path=tuple(self.path_buffer),
        )
        self._segments.append(segment)
        logger.debug(
            "Segment %d closed: %.2f m in %.1f s",
            segment.id, segment.distance_meters, segment.duration_seconds,
        )

        self.segment_id_counter += 1
        self.segment_start_timestamp = now_ms
        self.distance_since_last_segment = 0.0
        self.path_buffer = []
        return segment


def _resolve_biometrics(biometrics: BiometricsArg) -> BiometricSnapshot:
    if biometrics is None:
        return EMPTY_BIOMETRICS
    if callable(biometrics):
        return biometrics()
    return biometrics
