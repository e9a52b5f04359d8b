"""Pending upload record kept by the offline upload queue."""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class PendingUpload:
    """A finished session that could not be delivered to the remote API."""

    session_id: str
    payload: Dict[str, Any]             # wire-format endSession body
    enqueued_at_millis: int
    attempt_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingUpload":
        return cls(
            session_id=str(data["session_id"]),
            payload=data["payload"],
            enqueued_at_millis=int(data["enqueued_at_millis"]),
            attempt_count=int(data.get("attempt_count", 0)),
            last_error=data.get("last_error"),
        )
