"""
Standardized API Response Module

Every endpoint answers with the same JSON envelope so the storefront and the
admin dashboard can share one fetch wrapper.

RESPONSE FORMAT:
    Success:
        {
            "success": true,
            "data": <response data>,
            ...extra top-level keys (e.g. "refundAmount", "meta")
        }

    Error:
        {
            "success": false,
            "error": "Human-readable message",
            "code": "ERROR_CODE"
        }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: No valid auth credentials provided
    - AUTHORIZATION_DENIED: User doesn't have required permissions
    - NOT_FOUND: Resource not found
    - VALIDATION_ERROR: Request data failed validation
    - CONFLICT: Capacity or state conflict (sold out, stop-sale, already cancelled)
    - RATE_LIMITED: Too many requests
    - INTERNAL_ERROR: Server-side error
"""

from typing import Any, Optional


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

    # Conflict errors (409)
    CONFLICT = "CONFLICT"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_TO_CODE = {
    400: ErrorCodes.VALIDATION_ERROR,
    401: ErrorCodes.AUTHENTICATION_REQUIRED,
    403: ErrorCodes.AUTHORIZATION_DENIED,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    429: ErrorCodes.RATE_LIMITED,
}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any = None, **extra: Any) -> dict:
    """
    Create a success envelope dict.

    Extra keyword arguments become additional top-level keys:
        success_response(booking, refundAmount=120.0, refundPercentage=100)
    """
    response = {"success": True, "data": data}
    response.update(extra)
    return response


def error_response(message: str, code: Optional[str] = None) -> dict:
    """Create an error envelope dict."""
    response = {"success": False, "error": message}
    if code:
        response["code"] = code
    return response


def code_for_status(status_code: int) -> str:
    return STATUS_TO_CODE.get(status_code, ErrorCodes.INTERNAL_ERROR)
