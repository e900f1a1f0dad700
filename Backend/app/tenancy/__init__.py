"""
Multi-tenancy package.

Modules:
    config:  reserved tenant ids, domain mapping, fallback/starter configs
    context: TenantContext resolution and cached tenant config lookup
    queries: tenant-scoped query helpers with default-catalog fallback
"""

from .config import (
    ALL_TENANTS,
    DEFAULT_TENANT_ID,
    SHARED_TENANT_ID,
    default_tenant_config,
    fallback_tenant_config,
    generate_css_variables,
    generate_preview_url,
    normalize_domain,
    tenant_id_from_host,
)

from .context import (
    ResolvedTenantConfig,
    TenantContext,
    TenantResolutionSource,
    clear_tenant_cache,
    get_tenant_config,
    get_tenant_context,
    resolve_tenant_context,
    tenant_public_config,
)

from .queries import (
    build_tenant_clause,
    count_owned,
    get_public_tour,
    list_categories,
    list_public_tours,
    resolve_catalog_clause,
    tenant_filter,
)

__all__ = [
    # Config
    "ALL_TENANTS",
    "DEFAULT_TENANT_ID",
    "SHARED_TENANT_ID",
    "default_tenant_config",
    "fallback_tenant_config",
    "generate_css_variables",
    "generate_preview_url",
    "normalize_domain",
    "tenant_id_from_host",
    # Context
    "ResolvedTenantConfig",
    "TenantContext",
    "TenantResolutionSource",
    "clear_tenant_cache",
    "get_tenant_config",
    "get_tenant_context",
    "resolve_tenant_context",
    "tenant_public_config",
    # Query helpers
    "build_tenant_clause",
    "count_owned",
    "get_public_tour",
    "list_categories",
    "list_public_tours",
    "resolve_catalog_clause",
    "tenant_filter",
]
