"""
Core module - configuration, database, request context, and response formatting.
"""
from .config import get_settings
from .db import get_session, Base, engine, AsyncSessionLocal
from .request_context import (
    RequestContext,
    resolve_request_context,
    require_admin_access,
    require_admin,
    get_request_context,
    get_optional_request_context,
)
from .responses import (
    ErrorCodes,
    success_response,
    error_response,
    code_for_status,
)

__all__ = [
    # Config
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Request Context
    "RequestContext",
    "resolve_request_context",
    "require_admin_access",
    "require_admin",
    "get_request_context",
    "get_optional_request_context",
    # Responses
    "ErrorCodes",
    "success_response",
    "error_response",
    "code_for_status",
]
