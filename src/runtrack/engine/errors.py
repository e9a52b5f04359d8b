"""
Tracking error taxonomy.

Only PermissionDenied and InvalidTransition reach callers of the session
state machine. NetworkFailure and StorageFailure are raised by the remote
client and the durable queue and are recovered inside the engine.
Unavailable sensors and rejected fixes are not exceptions at all: they are
the Absent reading and the filter's RejectReason.
"""


class TrackingError(RuntimeError):
    """Base class for tracking engine errors."""


class PermissionDenied(TrackingError):
    """Raised by start() when location permission is refused."""


class InvalidTransition(TrackingError):
    """Raised on lifecycle misuse, e.g. pause() while idle."""


class NetworkFailure(TrackingError):
    """Raised when a remote session API call fails."""


class StorageFailure(TrackingError):
    """Raised when a durable store read or write fails."""
