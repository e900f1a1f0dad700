"""
Request Context Resolution Module

This module is the SINGLE SOURCE OF TRUTH for identity resolution.
All API routes use it for authentication and admin authorization.

ARCHITECTURE:
    1. resolve_request_context() extracts the bearer token from the request
       (Authorization header, or the admin-auth-token cookie for admin pages)
    2. It verifies the token (app HS256 JWT or Firebase ID token)
    3. Returns a standardized RequestContext
    4. require_admin_access() checks scope, role and permissions

ADMIN RULES:
    - scope must be "admin"
    - super_admin bypasses every permission check
    - otherwise every required permission must be in the token's list
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

ADMIN_COOKIE = "admin-auth-token"
SUPER_ADMIN_ROLE = "super_admin"


@dataclass
class RequestContext:
    """
    Resolved identity for a request.

    ``user_id`` is the token subject: an app user id or a Firebase uid.
    Bookings store it as their owner.
    """
    user_id: str
    auth_method: str  # 'app_jwt', 'firebase', 'none'
    is_authenticated: bool = True

    email: Optional[str] = None
    scope: str = "customer"
    role: str = "customer"
    permissions: list[str] = field(default_factory=list)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and self.scope == "admin"

    @property
    def is_super_admin(self) -> bool:
        return self.is_admin and self.role == SUPER_ADMIN_ROLE

    def has_permission(self, permission: str) -> bool:
        return self.is_super_admin or permission in self.permissions


def _extract_token(request: Request, allow_cookie: bool) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    if allow_cookie:
        return request.cookies.get(ADMIN_COOKIE) or None
    return None


async def resolve_request_context(
    request: Request,
    require_auth: bool = True,
    allow_cookie: bool = False,
) -> RequestContext:
    """
    Resolve the identity from a request.

    Args:
        request: The FastAPI request object
        require_auth: If True, raises 401 when no valid identity is found
        allow_cookie: Also accept the admin-auth-token cookie

    Raises:
        HTTPException 401: If require_auth=True and no valid identity found
    """
    from ..firebase_auth import verify_token

    token = _extract_token(request, allow_cookie)
    if not token:
        if require_auth:
            logger.warning("Authentication failed: no bearer token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required. Please sign in.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return RequestContext(user_id="", auth_method="none", is_authenticated=False)

    try:
        claims = verify_token(token)
    except HTTPException:
        if require_auth:
            raise
        return RequestContext(user_id="", auth_method="none", is_authenticated=False)

    user_id = claims.get("sub") or claims.get("user_id")
    if not user_id:
        logger.error("Token verified but missing 'sub' claim")
        if require_auth:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing user ID claim",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return RequestContext(user_id="", auth_method="none", is_authenticated=False)

    ctx = RequestContext(
        user_id=str(user_id),
        auth_method="firebase" if claims.get("firebase") else "app_jwt",
        email=claims.get("email"),
        scope=claims.get("scope") or "customer",
        role=claims.get("role") or "customer",
        permissions=list(claims.get("permissions") or []),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
    logger.debug(f"Authenticated {ctx.user_id} via {ctx.auth_method} (scope={ctx.scope})")
    return ctx


def require_admin_access(ctx: RequestContext, permissions: tuple[str, ...] = ()) -> None:
    """
    The ONE authorization rule for admin routes.

    Raises:
        HTTPException 403: caller is not an admin or lacks a permission
    """
    if not ctx.is_admin:
        logger.warning(f"Authorization failed: {ctx.user_id} is not an admin (scope={ctx.scope})")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required.",
        )
    missing = [p for p in permissions if not ctx.has_permission(p)]
    if missing:
        logger.warning(f"Authorization failed: {ctx.user_id} ({ctx.role}) lacks {missing}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied. Missing permission: {', '.join(missing)}.",
        )


async def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency for an authenticated caller.

        @router.get("/api/bookings/mine")
        async def handler(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    return await resolve_request_context(request, require_auth=True)


async def get_optional_request_context(request: Request) -> RequestContext:
    """Returns a context even when unauthenticated (is_authenticated=False)."""
    return await resolve_request_context(request, require_auth=False)


def require_admin(*permissions: str):
    """
    Dependency factory for admin routes.

    Usage:
        @router.post("/api/admin/bookings/{booking_id}/cancel")
        async def cancel(ctx: RequestContext = Depends(require_admin("manageBookings"))):
            ...
    """
    async def dependency(request: Request) -> RequestContext:
        ctx = await resolve_request_context(request, require_auth=True, allow_cookie=True)
        require_admin_access(ctx, permissions)
        return ctx

    return dependency
