"""
GPS signal filter: classifies each raw fix against the previous one.

The filter decides, independently, whether a fix is usable for
  - the visual path trace,
  - distance accumulation,
  - the pace signal,
and records why it was rejected. It is a pure function: the same
(previous, current, config) always yields the same FilterDecision, which is
what makes recorded tracks replayable.

Rules, in order (first match wins):
  1. non-finite latitude/longitude  → INVALID_COORDINATE
  2. non-finite timestamp           → INVALID_TIMESTAMP
  3. no previous fix                → NO_PREVIOUS_SAMPLE (anchors the path only)
  4. accuracy > max accuracy        → LOW_ACCURACY
  5. distance < min distance        → BELOW_MIN_DISTANCE
  6. time since previous > max gap  → TIME_GAP_TOO_LARGE (path point, new anchor)
  7. implied speed > max            → IMPLAUSIBLE_SPEED

Invalid fixes are unusable for every purpose and must never become the
comparison baseline.
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from runtrack.models.location import LocationFix

EARTH_RADIUS_M = 6_371_000.0
MPS_TO_KMH = 3.6

# Haversine of metre offsets lands a hair under whole metres (3 m -> 2.9999999998).
DISTANCE_EPSILON_M = 1e-6


class RejectReason(str, Enum):
    NONE = "none"
    INVALID_COORDINATE = "invalid_coordinate"
    INVALID_TIMESTAMP = "invalid_timestamp"
    NO_PREVIOUS_SAMPLE = "no_previous_sample"
    TIME_GAP_TOO_LARGE = "time_gap_too_large"
    LOW_ACCURACY = "low_accuracy"
    BELOW_MIN_DISTANCE = "below_min_distance"
    IMPLAUSIBLE_SPEED = "implausible_speed"


@dataclass(frozen=True)
class GpsFilterConfig:
    max_accuracy_meters: float = 25.0
    min_distance_meters: float = 3.0
    max_speed_kmh: float = 36.0
    max_gap_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings) -> "GpsFilterConfig":
        return cls(
            max_accuracy_meters=settings.max_accuracy_meters,
            min_distance_meters=settings.min_distance_meters,
            max_speed_kmh=settings.max_speed_kmh,
            max_gap_seconds=settings.max_gap_seconds,
        )


DEFAULT_GPS_FILTER_CONFIG = GpsFilterConfig()


@dataclass(frozen=True)
class FilterDecision:
    accepted_for_path: bool
    accepted_for_distance: bool
    accepted_for_pace: bool
    distance_meters: float
    speed_meters_per_second: float
    reject_reason: RejectReason


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres on a sphere of radius EARTH_RADIUS_M."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _reported_speed(fix: LocationFix, implied_mps: float) -> float:
    """Speed carried on the decision for pace smoothing.

    Averages the device-reported speed with the implied speed when the device
    reports one; validation never uses this value.
    """
    device = fix.speed_meters_per_second
    if device is not None and math.isfinite(device) and device > 0:
        return (device + implied_mps) / 2
    return implied_mps


def _is_finite(value) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def _unusable(reason: RejectReason) -> FilterDecision:
    return FilterDecision(
        accepted_for_path=False,
        accepted_for_distance=False,
        accepted_for_pace=False,
        distance_meters=0.0,
        speed_meters_per_second=0.0,
        reject_reason=reason,
    )


def evaluate(
    previous: Optional[LocationFix],
    current: LocationFix,
    config: GpsFilterConfig = DEFAULT_GPS_FILTER_CONFIG,
) -> FilterDecision:
    """
    Classify `current` against the previously evaluated fix.

    Args:
        previous: The last fix fed to the filter, or None for the first one.
        current: The new raw fix.
        config: Thresholds (accuracy, time gap, minimum distance, maximum speed).

    Returns:
        A FilterDecision. Rejections are reported through reject_reason,
        never raised.
    """
    if not (_is_finite(current.latitude) and _is_finite(current.longitude)):
        return _unusable(RejectReason.INVALID_COORDINATE)
    if not _is_finite(current.timestamp_millis):
        return _unusable(RejectReason.INVALID_TIMESTAMP)

    if previous is None:
        return FilterDecision(
            accepted_for_path=True,
            accepted_for_distance=False,
            accepted_for_pace=False,
            distance_meters=0.0,
            speed_meters_per_second=0.0,
            reject_reason=RejectReason.NO_PREVIOUS_SAMPLE,
        )

    distance = haversine_meters(
        previous.latitude, previous.longitude, current.latitude, current.longitude
    )
    elapsed_s = (current.timestamp_millis - previous.timestamp_millis) / 1000.0
    implied_mps = distance / elapsed_s if elapsed_s > 0 else 0.0

    accuracy = current.accuracy_meters
    if accuracy is not None and accuracy > config.max_accuracy_meters:
        return FilterDecision(
            accepted_for_path=False,
            accepted_for_distance=False,
            accepted_for_pace=False,
            distance_meters=distance,
            speed_meters_per_second=implied_mps,
            reject_reason=RejectReason.LOW_ACCURACY,
        )

    if distance + DISTANCE_EPSILON_M < config.min_distance_meters:
        return FilterDecision(
            accepted_for_path=True,
            accepted_for_distance=False,
            accepted_for_pace=False,
            distance_meters=distance,
            speed_meters_per_second=implied_mps,
            reject_reason=RejectReason.BELOW_MIN_DISTANCE,
        )

    if elapsed_s > config.max_gap_seconds:
        return FilterDecision(
            accepted_for_path=True,
            accepted_for_distance=False,
            accepted_for_pace=False,
            distance_meters=distance,
            speed_meters_per_second=implied_mps,
            reject_reason=RejectReason.TIME_GAP_TOO_LARGE,
        )

    if implied_mps * MPS_TO_KMH > config.max_speed_kmh:
        return FilterDecision(
            accepted_for_path=False,
            accepted_for_distance=False,
            accepted_for_pace=False,
            distance_meters=distance,
            speed_meters_per_second=implied_mps,
            reject_reason=RejectReason.IMPLAUSIBLE_SPEED,
        )

    return FilterDecision(
        accepted_for_path=True,
        accepted_for_distance=True,
        # pace needs a time delta to derive a speed from
        accepted_for_pace=elapsed_s > 0,
        distance_meters=distance,
        speed_meters_per_second=_reported_speed(current, implied_mps),
        reject_reason=RejectReason.NONE,
    )
