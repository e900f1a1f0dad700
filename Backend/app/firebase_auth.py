"""
Token verification for the storefront and the admin dashboard.

Two kinds of bearer tokens are accepted:

- App tokens: HS256 JWTs signed with JWT_SECRET. Admin sessions carry
  ``scope="admin"``, a ``role`` and a ``permissions`` list.
- Firebase ID tokens: RS256 JWTs signed by Google's securetoken service,
  verified against the published JWKS with FIREBASE_PROJECT_ID as audience.

Usage:
    from app.firebase_auth import verify_token

    claims = verify_token(token)
    user_id = claims["sub"]
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import httpx
import jwt
from fastapi import HTTPException, status

from .core.config import get_settings

logger = logging.getLogger(__name__)

FIREBASE_JWKS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)
APP_TOKEN_ALGORITHM = "HS256"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


# ────────────────────────────────────────────────────────────────
# App tokens (HS256)
# ────────────────────────────────────────────────────────────────

def create_access_token(
    subject: str,
    *,
    email: Optional[str] = None,
    scope: str = "customer",
    role: str = "customer",
    permissions: Optional[list[str]] = None,
    expires_minutes: int = 60 * 24,
) -> str:
    """
    Issue an app token.

    Example:
        token = create_access_token("42", email="ops@example.com", scope="admin",
                                    role="operations", permissions=["manageBookings"])
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "email": email,
        "scope": scope,
        "role": role,
        "permissions": permissions or [],
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, get_settings().jwt_secret, algorithm=APP_TOKEN_ALGORITHM)


def verify_app_token(token: str) -> dict:
    """Verify an HS256 app token; raises 401 on any failure."""
    try:
        return jwt.decode(
            token,
            get_settings().jwt_secret,
            algorithms=[APP_TOKEN_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("App token verification failed: token has expired")
        raise _unauthorized("Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"App token verification failed: {e}")
        raise _unauthorized("Invalid token") from e


# ────────────────────────────────────────────────────────────────
# Firebase ID tokens (RS256)
# ────────────────────────────────────────────────────────────────

@lru_cache(maxsize=1)
def fetch_firebase_jwks() -> dict:
    """
    Fetch Google's signing keys for Firebase ID tokens.

    Cached for the life of the process; keys rotate slowly and an unknown
    ``kid`` clears the cache (see verify_firebase_token).
    """
    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(FIREBASE_JWKS_URL)
            response.raise_for_status()
            logger.info("Fetched Firebase JWKS")
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP {e.response.status_code} fetching Firebase JWKS")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Unable to fetch Firebase JWKS: HTTP Error {e.response.status_code}",
        )
    except httpx.HTTPError as e:
        logger.error(f"Failed to fetch Firebase JWKS: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to fetch Firebase JWKS",
        )


def _find_signing_key(kid: str):
    for key in fetch_firebase_jwks().get("keys", []):
        if key.get("kid") == kid:
            return jwt.PyJWK.from_dict(key).key
    return None


def verify_firebase_token(token: str) -> dict:
    """
    Verify a Firebase ID token and return its claims.

    The returned dict is normalized so ``sub`` is the Firebase uid and
    ``scope`` is "customer".
    """
    settings = get_settings()
    if not settings.firebase_project_id:
        logger.warning("FIREBASE_PROJECT_ID is not configured; rejecting Firebase token")
        raise _unauthorized("Firebase authentication is not configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.InvalidTokenError as e:
        raise _unauthorized("Invalid token") from e
    if not kid:
        raise _unauthorized("Token header missing key ID (kid)")

    signing_key = _find_signing_key(kid)
    if signing_key is None:
        # Keys may have rotated since the cache was filled
        fetch_firebase_jwks.cache_clear()
        signing_key = _find_signing_key(kid)
    if signing_key is None:
        raise _unauthorized(f"No matching key found for kid: {kid}")

    try:
        decoded = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.firebase_project_id,
            issuer=f"https://securetoken.google.com/{settings.firebase_project_id}",
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Firebase token verification failed: token has expired")
        raise _unauthorized("Token has expired") from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"Firebase token verification failed: {e}")
        raise _unauthorized("Invalid token") from e

    decoded.setdefault("scope", "customer")
    decoded.setdefault("role", "customer")
    decoded.setdefault("permissions", [])
    logger.debug(f"Firebase token verified for user: {decoded.get('sub')}")
    return decoded


def verify_token(token: str) -> dict:
    """Dispatch on the token's algorithm: HS256 app token or RS256 Firebase token."""
    try:
        algorithm = jwt.get_unverified_header(token).get("alg")
    except jwt.InvalidTokenError as e:
        raise _unauthorized("Invalid token") from e

    if algorithm == APP_TOKEN_ALGORITHM:
        return verify_app_token(token)
    if algorithm == "RS256":
        return verify_firebase_token(token)
    raise _unauthorized(f"Unsupported token algorithm: {algorithm}")
