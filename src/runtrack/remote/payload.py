"""
Wire format for the remote session API.

Internally, unknown biometrics are None. The API has no null: 0 is its
"absent" sentinel, so the conversion happens here and nowhere else.

endSession body:
    {
        "id": "...",
        "shoeId": 3,                  # only when a shoe was selected
        "distance": 5012,             # metres, integer-rounded
        "durationSec": 1800,          # non-paused seconds
        "heartRate": 151,             # last known, 0 = absent
        "cadence": 0,                 # last known, 0 = absent
        "calorie": 402,
        "startTimestamp": 1740000000, # unix seconds
        "items": [ {segment}, ... ]   # ordered by orderIndex
    }
"""
from typing import Any, Dict, Optional

from runtrack.models.session import RunningSession, Segment

PLACEHOLDER_PREFIX = "local-"


def is_placeholder_id(session_id: Any) -> bool:
    return str(session_id).startswith(PLACEHOLDER_PREFIX)


def _wire_int(value: Optional[float]) -> int:
    return int(round(value)) if value is not None else 0


def segment_to_wire(segment: Segment) -> Dict[str, Any]:
    start_s = segment.start_timestamp_millis / 1000.0
    return {
        "id": segment.id,
        "orderIndex": segment.order_index,
        "distance": round(segment.distance_meters, 2),
        "durationSec": round(segment.duration_seconds, 2),
        "heartRate": _wire_int(segment.heart_rate),
        "cadence": _wire_int(segment.cadence),
        "calories": segment.calories if segment.calories is not None else 0,
        "startTimeStamp": start_s,
        "endTimeStamp": start_s + segment.duration_seconds,
        "gpsPoints": [
            {
                "latitude": p.latitude,
                "longitude": p.longitude,
                "timestampMs": p.timestamp_millis,
                "speed": p.speed_meters_per_second,
                "accuracy": p.accuracy_meters,
            }
            for p in segment.path
        ],
    }


def session_to_wire(session: RunningSession) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": session.id,
        "distance": int(round(session.total_distance_meters)),
        "durationSec": int(round(session.elapsed_seconds)),
        "heartRate": _wire_int(session.last_heart_rate),
        "cadence": _wire_int(session.last_cadence),
        "calorie": _wire_int(session.last_calorie_estimate),
        "startTimestamp": session.start_timestamp_millis // 1000,
        "items": [
            segment_to_wire(s)
            for s in sorted(session.segments, key=lambda s: s.order_index)
        ],
    }
    if session.shoe_id is not None:
        payload["shoeId"] = session.shoe_id
    return payload
