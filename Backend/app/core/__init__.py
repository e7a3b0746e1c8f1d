"""
Core module - configuration, database, identity, locking, errors and response formatting.
"""
from .config import get_settings
from .db import get_session, Base, engine, AsyncSessionLocal, UTCDateTime, utcnow
from .errors import (
    SchedulingError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StateError,
    ExpiredTokenError,
    DownstreamNotificationError,
    LineInvariantError,
)
from .locks import entity_locks, KeyedLocks
from .request_context import (
    RequestContext,
    UserRole,
    get_request_context,
    require_client,
    require_business,
)
from .responses import (
    ErrorDetail,
    ErrorResponse,
    ErrorCodes,
    success_response,
    error_response,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "UTCDateTime",
    "utcnow",
    # Errors
    "SchedulingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StateError",
    "ExpiredTokenError",
    "DownstreamNotificationError",
    "LineInvariantError",
    # Locking
    "entity_locks",
    "KeyedLocks",
    # Request Context
    "RequestContext",
    "UserRole",
    "get_request_context",
    "require_client",
    "require_business",
    # Responses
    "ErrorDetail",
    "ErrorResponse",
    "ErrorCodes",
    "success_response",
    "error_response",
]
