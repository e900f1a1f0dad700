"""
Multi-tenancy context module.

Every storefront and admin request runs on behalf of one tenant (brand).
This module turns an inbound request into a TenantContext and loads the
tenant's public configuration.

RESOLUTION ORDER (first match wins):
    1. ?tenant= / ?tenantId= query parameter (admin preview links)
    2. X-Tenant-Id header
    3. tenantId cookie
    4. Host header, via TENANT_DOMAINS and known subdomains
    5. DEFAULT_TENANT_ID setting

CONFIG LOOKUP never raises: a missing tenant falls back to the default
tenant row, then to the hardcoded FALLBACK_TENANT_CONFIG.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..models import Tenant
from .config import (
    ALL_TENANTS,
    DEFAULT_TENANT_ID,
    TENANT_COOKIE,
    TENANT_HEADER,
    TENANT_QUERY_PARAMS,
    fallback_tenant_config,
    generate_css_variables,
    tenant_id_from_host,
)


logger = logging.getLogger(__name__)


class TenantResolutionSource(str, Enum):
    """How the tenant was determined."""

    QUERY_PARAM = "query_param"     # ?tenant= preview link
    HEADER = "header"               # X-Tenant-Id
    COOKIE = "cookie"               # tenantId cookie set by the storefront
    DOMAIN = "domain"               # Host header mapping
    DEFAULT_FALLBACK = "default"    # Nothing matched


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable tenant identity for a request.

    Attributes:
        tenant_id: Tenant key (e.g. "hurghada", "default")
        source: How this context was determined (for logging)
        host: Request host, kept for robots/sitemap URLs
    """

    tenant_id: str
    source: TenantResolutionSource = TenantResolutionSource.DEFAULT_FALLBACK
    host: Optional[str] = None

    def __post_init__(self):
        if not self.tenant_id or not self.tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")
        if self.tenant_id == ALL_TENANTS:
            raise ValueError(f"'{ALL_TENANTS}' is not a valid request tenant")


# ────────────────────────────────────────────────────────────────
# Resolution
# ────────────────────────────────────────────────────────────────

def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value or value == ALL_TENANTS:
        return None
    return value


def resolve_tenant_context(request: Request) -> TenantContext:
    """
    Resolve the tenant for a request without touching the database.

    Example:
        GET /api/tours/public?tenant=luxor      -> tenant_id="luxor", source=QUERY_PARAM
        GET /api/tours/public  (Host: cairotours.com, TENANT_DOMAINS maps it)
                                                -> tenant_id="cairo", source=DOMAIN
    """
    host = request.headers.get("host")

    for param in TENANT_QUERY_PARAMS:
        tenant_id = _clean(request.query_params.get(param))
        if tenant_id:
            return TenantContext(tenant_id, TenantResolutionSource.QUERY_PARAM, host)

    tenant_id = _clean(request.headers.get(TENANT_HEADER))
    if tenant_id:
        return TenantContext(tenant_id, TenantResolutionSource.HEADER, host)

    tenant_id = _clean(request.cookies.get(TENANT_COOKIE))
    if tenant_id:
        return TenantContext(tenant_id, TenantResolutionSource.COOKIE, host)

    tenant_id = _clean(tenant_id_from_host(host))
    if tenant_id:
        return TenantContext(tenant_id, TenantResolutionSource.DOMAIN, host)

    return TenantContext(get_settings().default_tenant_id, TenantResolutionSource.DEFAULT_FALLBACK, host)


async def get_tenant_context(request: Request) -> TenantContext:
    """
    FastAPI dependency to resolve the tenant for a request.

    Usage:
        @router.get("/api/tours/public")
        async def list_tours(
            tenant: TenantContext = Depends(get_tenant_context),
            session: AsyncSession = Depends(get_session),
        ):
            tours = await list_public_tours(session, tenant.tenant_id)
    """
    ctx = resolve_tenant_context(request)
    logger.debug(f"Resolved tenant {ctx.tenant_id} via {ctx.source.value}")
    return ctx


# ────────────────────────────────────────────────────────────────
# Tenant Config Lookup (cached)
# ────────────────────────────────────────────────────────────────

@dataclass
class ResolvedTenantConfig:
    config: dict
    is_default: bool = False
    is_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "tenant": self.config,
            "isDefault": self.is_default,
            "isFallback": self.is_fallback,
        }


# {tenant_id: (expires_at_monotonic, ResolvedTenantConfig)}
_tenant_cache: dict[str, tuple[float, ResolvedTenantConfig]] = {}


def clear_tenant_cache(tenant_id: Optional[str] = None) -> None:
    """Evict one tenant (or every tenant) from the config cache."""
    if tenant_id:
        _tenant_cache.pop(tenant_id, None)
    else:
        _tenant_cache.clear()
    logger.info(f"Tenant config cache cleared ({tenant_id or 'all'})")


def tenant_public_config(tenant: Tenant) -> dict:
    """Client-safe subset of a Tenant row (no payment keys or internal flags)."""
    branding = tenant.branding or {}
    payments = tenant.payments or {}
    return {
        "tenantId": tenant.tenant_id,
        "name": tenant.name,
        "slug": tenant.slug or tenant.tenant_id,
        "domain": tenant.domain,
        "branding": branding,
        "seo": tenant.seo or {},
        "contact": tenant.contact or {},
        "features": tenant.features or {},
        "payments": {
            "currency": payments.get("currency", "USD"),
            "currencySymbol": payments.get("currencySymbol", "$"),
            "supportedCurrencies": payments.get("supportedCurrencies", ["USD"]),
        },
        "email": tenant.email_settings or {},
        "localization": tenant.localization or {},
        "cssVariables": generate_css_variables(branding) if branding else None,
        "isDefault": tenant.is_default,
        "isActive": tenant.is_active,
    }


def _cached_config(key: str) -> Optional[ResolvedTenantConfig]:
    entry = _tenant_cache.get(key)
    if entry and entry[0] > time.monotonic():
        return entry[1]
    return None


def _cache_config(key: str, resolved: ResolvedTenantConfig) -> None:
    """Store a config found in the database; expired entries are swept on write."""
    ttl = get_settings().tenant_cache_ttl_seconds
    if ttl <= 0:
        return
    now = time.monotonic()
    for stale in [k for k, (expires_at, _) in _tenant_cache.items() if expires_at <= now]:
        del _tenant_cache[stale]
    _tenant_cache[key] = (now + ttl, resolved)


async def get_tenant_config(session: AsyncSession, tenant_id: str) -> ResolvedTenantConfig:
    """
    Load a tenant's public config, falling back to the default tenant and
    then to the hardcoded fallback. Database errors are logged, not raised.

    Only rows that exist are cached, under their own tenant_id; an unknown
    id never gets a cache entry of its own.
    """
    cached = _cached_config(tenant_id)
    if cached:
        return cached

    try:
        result = await session.execute(
            select(Tenant).where(Tenant.tenant_id == tenant_id, Tenant.is_active.is_(True))
        )
        tenant = result.scalar_one_or_none()
        if tenant:
            resolved = ResolvedTenantConfig(tenant_public_config(tenant), is_default=tenant.is_default)
            _cache_config(tenant.tenant_id, resolved)
            return resolved

        cached = _cached_config(DEFAULT_TENANT_ID)
        if cached:
            return cached
        result = await session.execute(
            select(Tenant).where(Tenant.is_default.is_(True), Tenant.is_active.is_(True)).limit(1)
        )
        default_tenant = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Tenant config lookup failed for '{tenant_id}': {e}")
        return ResolvedTenantConfig(fallback_tenant_config(), is_default=True, is_fallback=True)

    if default_tenant is None:
        logger.warning(f"No tenant '{tenant_id}' and no default tenant; serving fallback config")
        return ResolvedTenantConfig(fallback_tenant_config(), is_default=True, is_fallback=True)
    resolved = ResolvedTenantConfig(tenant_public_config(default_tenant), is_default=True)
    _cache_config(default_tenant.tenant_id, resolved)
    return resolved


# ────────────────────────────────────────────────────────────────
# Exports
# ────────────────────────────────────────────────────────────────

__all__ = [
    "TenantContext",
    "TenantResolutionSource",
    "ResolvedTenantConfig",
    "resolve_tenant_context",
    "get_tenant_context",
    "get_tenant_config",
    "tenant_public_config",
    "clear_tenant_cache",
]
