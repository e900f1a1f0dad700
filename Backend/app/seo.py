"""
robots.txt and sitemap.xml for each tenant's storefront domain.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from xml.sax.saxutils import escape

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import BlogPost, Category, Destination
from .tenancy import list_public_tours, resolve_catalog_clause

logger = logging.getLogger(__name__)

PRIVATE_PATHS = (
    "/admin",
    "/api",
    "/user",
    "/checkout",
    "/cart",
    "/login",
    "/signup",
    "/forgot",
    "/profile",
    "/bookings",
    "/booking/verify",
    "/accept-invitation",
    "/payment",
)

# Crawlers that train models or scrape content; denied everywhere
BLOCKED_BOTS = (
    "GPTBot",
    "ChatGPT-User",
    "CCBot",
    "Google-Extended",
    "anthropic-ai",
    "ClaudeBot",
    "Bytespider",
    "PerplexityBot",
    "AhrefsBot",
    "SemrushBot",
    "MJ12bot",
    "DotBot",
    "PetalBot",
)

# (path, changefreq, priority)
STATIC_PAGES = (
    ("", "daily", 1.0),
    ("/about", "monthly", 0.8),
    ("/contact", "monthly", 0.8),
    ("/destinations", "weekly", 0.9),
    ("/search", "daily", 0.7),
    ("/blog", "daily", 0.8),
    ("/faqs", "monthly", 0.6),
    ("/terms", "yearly", 0.3),
    ("/privacy", "yearly", 0.3),
)


def tenant_base_url(tenant_config: Optional[dict]) -> str:
    """``https://<tenant domain>``, else BASE_URL."""
    domain = (tenant_config or {}).get("domain")
    if domain:
        return f"https://{domain}"
    return get_settings().base_url.rstrip("/")


def build_robots_txt(base_url: str) -> str:
    lines = [
        f"# Robots.txt for {base_url}",
        "",
        "User-agent: *",
        "Allow: /",
    ]
    for path in PRIVATE_PATHS:
        lines.append(f"Disallow: {path}")
        lines.append(f"Disallow: {path}/*")
    lines += [
        "Disallow: /*?tenant=*",
        "Disallow: /*?reset_tenant=*",
        "Crawl-delay: 1",
        "",
        "User-agent: Googlebot",
        "Allow: /",
    ]
    lines += [f"Disallow: {path}" for path in PRIVATE_PATHS]
    for bot in BLOCKED_BOTS:
        lines += ["", f"User-agent: {bot}", "Disallow: /"]
    lines += ["", f"Sitemap: {base_url}/sitemap.xml", ""]
    return "\n".join(lines)


def _url_entry(loc: str, lastmod: Optional[datetime], changefreq: str, priority: float) -> str:
    lastmod = lastmod or datetime.now(timezone.utc)
    return (
        "  <url>\n"
        f"    <loc>{escape(loc)}</loc>\n"
        f"    <lastmod>{lastmod.date().isoformat()}</lastmod>\n"
        f"    <changefreq>{changefreq}</changefreq>\n"
        f"    <priority>{priority:.1f}</priority>\n"
        "  </url>"
    )


async def build_sitemap_xml(session: AsyncSession, tenant_id: str, base_url: str) -> str:
    """
    Static pages plus the tenant's tours, destinations, categories and posts.

    Catalog entries follow the same inherit-the-default rule as listings.
    A database failure degrades to the static pages only.
    """
    entries = [_url_entry(f"{base_url}{path}", None, freq, prio) for path, freq, prio in STATIC_PAGES]

    try:
        for tour in await list_public_tours(session, tenant_id):
            entries.append(_url_entry(f"{base_url}/{tour.slug}", tour.updated_at, "daily", 0.9))

        clause = await resolve_catalog_clause(session, Destination, tenant_id)
        for dest in (await session.execute(select(Destination).where(clause))).scalars():
            entries.append(_url_entry(f"{base_url}/destinations/{dest.slug}", dest.created_at, "weekly", 0.8))

        clause = await resolve_catalog_clause(session, Category, tenant_id)
        for cat in (await session.execute(select(Category).where(clause))).scalars():
            entries.append(_url_entry(f"{base_url}/categories/{cat.slug}", cat.created_at, "weekly", 0.7))

        posts = await session.execute(
            select(BlogPost).where(BlogPost.tenant_id == tenant_id, BlogPost.is_published.is_(True))
        )
        for post in posts.scalars():
            entries.append(_url_entry(f"{base_url}/blog/{post.slug}", post.updated_at, "weekly", 0.6))
    except SQLAlchemyError as e:
        logger.error(f"Sitemap generation for '{tenant_id}' fell back to static pages: {e}")

    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        + "\n".join(entries)
        + "\n</urlset>\n"
    )
