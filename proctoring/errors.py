from typing import Optional


class ProctorError(Exception):
    """Base error carrying a machine-readable reason and an HTTP status."""

    status_code: int = 500
    default_reason: str = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason

    def to_dict(self) -> dict:
        return {"success": False, "reason": self.reason, "message": self.message}


class ValidationError(ProctorError):
    """Malformed ingestion payload; nothing was mutated."""

    status_code = 400
    default_reason = "invalid_payload"


class NotFoundError(ProctorError):
    status_code = 404
    default_reason = "session_not_found"


class StateError(ProctorError):
    """Operation not allowed for the session's current status."""

    status_code = 409
    default_reason = "session_not_active"


class ClockError(ProctorError):
    """End time precedes start time."""

    status_code = 422
    default_reason = "negative_duration"


class PersistenceError(ProctorError):
    """Session state could not be written; the event was not counted."""

    status_code = 503
    default_reason = "store_unavailable"
