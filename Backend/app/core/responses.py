"""
Standardized API Response Module

Provides consistent error formatting across all API endpoints.

RESPONSE FORMAT:
    Success responses are the endpoint's response model, unwrapped.

    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: No valid identity token provided
    - AUTHORIZATION_DENIED: Caller has the wrong role or does not own the resource
    - NOT_FOUND: Resource not found
    - VALIDATION_ERROR: Request data failed validation
    - CONFLICT: Slot already taken or duplicate waitlist membership
    - STATE_CONFLICT: Transition not allowed from the current state
    - TOKEN_EXPIRED: Confirmation or offer link is past its validity window
    - RATE_LIMITED: Too many token-link requests from one address
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error envelope, used for OpenAPI documentation of error responses."""
    error: ErrorDetail
    status: str = "error"


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Conflict errors (409)
    CONFLICT = "CONFLICT"
    STATE_CONFLICT = "STATE_CONFLICT"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """
    Create a simple success acknowledgement dict.

    Use this for command endpoints that have nothing else to return.
    """
    return {"data": data, "status": "success"}


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.
    """
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
