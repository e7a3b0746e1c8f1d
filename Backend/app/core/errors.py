"""
Scheduling error taxonomy.

Engine functions raise these; the HTTP layer maps them to the standard
error envelope in one place (see main.py). Routers never translate them
by hand.

    ValidationError              400  malformed or missing input, never retried
    NotFoundError                404  unknown id / entity
    ConflictError                409  slot already booked, duplicate waitlist join
    StateError                   409  transition from a terminal or mismatched state
    ExpiredTokenError            400  token older than its validity window
    DownstreamNotificationError  --   best-effort collaborator failure, always swallowed
    LineInvariantError           500  programming-contract failure, never caught
"""

from typing import Any, Optional

from .responses import ErrorCodes


class SchedulingError(Exception):
    """Base class for expected engine failures surfaced to callers."""
    status_code: int = 400
    code: str = ErrorCodes.INVALID_INPUT

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(SchedulingError):
    status_code = 400
    code = ErrorCodes.VALIDATION_ERROR


class NotFoundError(SchedulingError):
    status_code = 404
    code = ErrorCodes.NOT_FOUND


class ConflictError(SchedulingError):
    status_code = 409
    code = ErrorCodes.CONFLICT


class StateError(SchedulingError):
    status_code = 409
    code = ErrorCodes.STATE_CONFLICT


class ExpiredTokenError(SchedulingError):
    status_code = 400
    code = ErrorCodes.TOKEN_EXPIRED


class DownstreamNotificationError(Exception):
    """Raised by notification transports. Callers log it and move on."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        self.message = message
        super().__init__(f"{channel}: {message}")


class LineInvariantError(AssertionError):
    """A waitlist line lost its dense 1..N position ordering."""
