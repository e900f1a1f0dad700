"""
Tenancy configuration constants and pure helpers.

This module centralizes the values every tenant lookup agrees on:

    - the reserved tenant ids (default / shared / all)
    - host-name to tenant mapping (TENANT_DOMAINS env + known subdomains)
    - the hardcoded fallback config served when no Tenant row exists
    - starter config, CSS variables and preview links for new tenants

Nothing here touches the database; see context.py for resolution.
"""

from copy import deepcopy
from typing import Optional
from urllib.parse import urlencode

from ..core.config import get_settings


# ────────────────────────────────────────────────────────────────
# Reserved tenant ids
# ────────────────────────────────────────────────────────────────

# Owner of the shared catalog that new tenants inherit until they add their own
DEFAULT_TENANT_ID: str = "default"

# Content visible to every tenant when shared content is requested
SHARED_TENANT_ID: str = "shared"

# Admin filter value meaning "every tenant"; never valid as a request tenant
ALL_TENANTS: str = "all"

TENANT_QUERY_PARAMS = ("tenant", "tenantId")
TENANT_HEADER = "X-Tenant-Id"
TENANT_COOKIE = "tenantId"


# Subdomain -> tenant, used when the full host is not in TENANT_DOMAINS
SUBDOMAIN_TENANTS: dict[str, str] = {
    "hurghada": "hurghada",
    "cairo": "cairo",
    "luxor": "luxor",
    "sharm": "sharm",
    "aswan": "aswan",
    "alexandria": "alexandria",
    "dahab": "dahab",
    "marsa-alam": "marsa-alam",
    "marsaalam": "marsa-alam",
    "makadi-bay": "makadi-bay",
    "makadibay": "makadi-bay",
    "el-gouna": "el-gouna",
    "elgouna": "el-gouna",
}


# ────────────────────────────────────────────────────────────────
# Domain mapping
# ────────────────────────────────────────────────────────────────

def normalize_domain(hostname: str) -> str:
    """Lowercase, drop a leading ``www.`` and any port."""
    host = (hostname or "").strip().lower()
    if host.startswith("www."):
        host = host[4:]
    return host.split(":")[0]


def tenant_id_from_host(hostname: Optional[str], domains: Optional[dict[str, str]] = None) -> Optional[str]:
    """
    Map a request host to a tenant id.

    Lookup order: exact host, normalized host, ``www.`` + normalized host,
    then the first label against SUBDOMAIN_TENANTS. Returns None when nothing
    matches so the caller can apply its own default.
    """
    if not hostname:
        return None
    if domains is None:
        domains = get_settings().tenant_domains_map

    host = hostname.strip().lower()
    if host in domains:
        return domains[host]

    normalized = normalize_domain(host)
    if normalized in domains:
        return domains[normalized]
    if f"www.{normalized}" in domains:
        return domains[f"www.{normalized}"]

    parts = normalized.split(".")
    if len(parts) >= 2 and parts[0] in SUBDOMAIN_TENANTS:
        return SUBDOMAIN_TENANTS[parts[0]]
    return None


# ────────────────────────────────────────────────────────────────
# Fallback / starter configs
# ────────────────────────────────────────────────────────────────

DEFAULT_BRANDING: dict = {
    "logo": "/EEO-logo.png",
    "logoAlt": "Egypt Excursions Online",
    "favicon": "/favicon.ico",
    "primaryColor": "#E63946",
    "secondaryColor": "#1D3557",
    "accentColor": "#F4A261",
    "backgroundColor": "#FFFFFF",
    "textColor": "#1F2937",
    "fontFamily": "Inter",
    "borderRadius": "8px",
}

DEFAULT_FEATURES: dict = {
    "enableBlog": True,
    "enableReviews": True,
    "enableWishlist": True,
    "enableAISearch": True,
    "enableIntercom": False,
    "enableMultiCurrency": True,
    "enableMultiLanguage": True,
    "enableHotelPickup": True,
}

DEFAULT_PAYMENTS: dict = {
    "currency": "USD",
    "currencySymbol": "$",
    "supportedCurrencies": ["USD", "EUR", "GBP", "EGP"],
}

# Served by /api/tenant/current when neither the tenant nor a default tenant exists
FALLBACK_TENANT_CONFIG: dict = {
    "tenantId": DEFAULT_TENANT_ID,
    "name": "Egypt Excursions Online",
    "domain": "egyptexcursionsonline.com",
    "branding": DEFAULT_BRANDING,
    "seo": {
        "defaultTitle": "Egypt Excursions Online - Tours & Experiences",
        "titleSuffix": "Egypt Excursions Online",
        "defaultDescription": "Discover Egypt's wonders with unforgettable tours and experiences.",
        "ogImage": "/hero1.jpg",
    },
    "contact": {
        "email": "info@egyptexcursionsonline.com",
        "phone": "+20 000 000 0000",
    },
    "features": DEFAULT_FEATURES,
    "payments": DEFAULT_PAYMENTS,
    "email": {
        "fromName": "Egypt Excursions Online",
        "fromEmail": "noreply@egyptexcursionsonline.com",
    },
    "localization": {
        "defaultLanguage": "en",
        "supportedLanguages": ["en", "ar"],
    },
    "isDefault": True,
    "isActive": True,
}


def fallback_tenant_config() -> dict:
    """A fresh copy of the hardcoded fallback, safe for callers to mutate."""
    return deepcopy(FALLBACK_TENANT_CONFIG)


def default_tenant_config(tenant_id: str, name: str) -> dict:
    """
    Starter config for a brand-new tenant.

    Example:
        default_tenant_config("luxor", "Luxor Tours")["domain"] == "luxortours.com"
    """
    domain = f"{tenant_id}tours.com"
    branding = dict(DEFAULT_BRANDING, logoAlt=f"{name} Logo")
    return {
        "tenantId": tenant_id,
        "name": name,
        "slug": tenant_id,
        "domain": domain,
        "domains": [domain, f"www.{domain}"],
        "branding": branding,
        "seo": {
            "defaultTitle": f"{name} - Tours & Excursions",
            "titleSuffix": name,
            "defaultDescription": f"Discover amazing tours and experiences with {name}. Book your adventure today!",
            "defaultKeywords": ["tours", "excursions", "travel", tenant_id],
            "ogImage": "/hero1.jpg",
        },
        "contact": {"email": f"info@{domain}", "phone": "+20 000 000 0000"},
        "features": dict(DEFAULT_FEATURES, enableNewsletter=True, enablePromoBar=False),
        "payments": dict(DEFAULT_PAYMENTS, supportedPaymentMethods=["card", "paypal"]),
        "email": {"fromName": name, "fromEmail": f"noreply@{domain}"},
        "localization": {
            "defaultLanguage": "en",
            "supportedLanguages": ["en", "ar"],
            "defaultTimezone": "Africa/Cairo",
        },
        "isActive": True,
        "isDefault": False,
    }


def generate_css_variables(branding: dict) -> str:
    """Render a tenant's branding as a ``:root`` CSS custom-property block."""
    font = branding.get("fontFamily") or "Inter"
    heading_font = branding.get("fontFamilyHeading") or font
    return (
        ":root {\n"
        f"  --primary-color: {branding.get('primaryColor')};\n"
        f"  --secondary-color: {branding.get('secondaryColor')};\n"
        f"  --accent-color: {branding.get('accentColor')};\n"
        f"  --background-color: {branding.get('backgroundColor') or '#FFFFFF'};\n"
        f"  --text-color: {branding.get('textColor') or '#1F2937'};\n"
        f"  --font-family: {font}, system-ui, sans-serif;\n"
        f"  --font-family-heading: {heading_font}, system-ui, sans-serif;\n"
        f"  --border-radius: {branding.get('borderRadius') or '8px'};\n"
        "}\n"
    )


def generate_preview_url(tenant_id: str, path: str = "/", base_url: Optional[str] = None) -> str:
    """Admin link that previews the storefront as ``tenant_id``."""
    base = (base_url or get_settings().base_url).rstrip("/")
    path = path or "/"
    return f"{base}{path}?{urlencode({'tenant': tenant_id})}"
