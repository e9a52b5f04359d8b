"""
LocationFix dataclass and conversion from raw location dicts.

LocationFix is the in-memory representation of one raw position sample, used
by the GPS filter, the segment engine and the background buffer. It is a
plain frozen dataclass with no storage dependencies.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LocationFix:
    """One raw geolocation sample. speed and accuracy are optional (not every
    platform reports them)."""

    latitude: float
    longitude: float
    timestamp_millis: int
    speed_meters_per_second: Optional[float] = None
    accuracy_meters: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestampMillis": self.timestamp_millis,
            "speedMetersPerSecond": self.speed_meters_per_second,
            "accuracyMeters": self.accuracy_meters,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocationFix":
        """Accepts both the camelCase form written by to_dict() and
        snake_case keys (hand-written track files)."""
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            timestamp_millis=int(
                data.get("timestampMillis", data.get("timestamp_millis"))
            ),
            speed_meters_per_second=data.get(
                "speedMetersPerSecond", data.get("speed_meters_per_second")
            ),
            accuracy_meters=data.get("accuracyMeters", data.get("accuracy_meters")),
        )
