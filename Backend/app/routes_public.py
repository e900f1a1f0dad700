"""
Public storefront API.

No authentication. Every route resolves the tenant from the request
(query > header > cookie > host > default) and reads catalog data with the
inherit-the-default fallback.

    GET  /api/tenant/current
    GET  /api/tours/public
    GET  /api/categories
    POST /api/offers/batch
    GET  /api/offers/tour/{tour_id}
    GET  /api/availability/{tour_id}?date=YYYY-MM-DD | ?month=M&year=YYYY
    POST /api/discounts/verify
    POST /api/blog/{slug}/like
    GET  /robots.txt
    GET  /sitemap.xml
"""

import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import availability_calendar, month_bounds, tour_options
from .core.config import get_settings
from .core.db import get_session
from .core.responses import success_response
from .models import BlogPost, Category, Tour
from .offers import PromoCodeError, batch_offer_badges, evaluate_tour_offers, verify_promo_code
from .rate_limiter import rate_limit_dependency
from .seo import build_robots_txt, build_sitemap_xml, tenant_base_url
from .tenancy import (
    ALL_TENANTS,
    TenantContext,
    get_tenant_config,
    get_tenant_context,
    list_categories,
    list_public_tours,
)

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter(tags=["public"])


# ────────────────────────────────────────────────────────────────
# Serializers
# ────────────────────────────────────────────────────────────────

def tour_to_dict(tour: Tour) -> dict:
    return {
        "id": tour.id,
        "tenantId": tour.tenant_id,
        "title": tour.title,
        "slug": tour.slug,
        "description": tour.description,
        "price": tour.price,
        "discountPrice": tour.discount_price,
        "duration": tour.duration,
        "image": tour.image,
        "categoryIds": tour.category_ids or [],
        "destinationId": tour.destination_id,
        "bookingOptions": tour.booking_options or [],
        "isFeatured": tour.is_featured,
    }


def category_to_dict(category: Category) -> dict:
    return {"id": category.id, "tenantId": category.tenant_id, "name": category.name, "slug": category.slug}


def _body_tenant(body_tenant_id: Optional[str], tenant: TenantContext) -> str:
    tenant_id = (body_tenant_id or "").strip() or tenant.tenant_id
    if tenant_id == ALL_TENANTS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid tenantId")
    return tenant_id


async def _published_tour(session: AsyncSession, tour_id: int) -> Tour:
    tour = await session.get(Tour, tour_id)
    if tour is None or not tour.is_published or not tour.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tour not found")
    return tour


# ────────────────────────────────────────────────────────────────
# Tenant & Catalog
# ────────────────────────────────────────────────────────────────

@router.get("/api/tenant/current")
async def current_tenant(
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    resolved = await get_tenant_config(session, tenant.tenant_id)
    return success_response(
        resolved.config,
        isDefault=resolved.is_default,
        isFallback=resolved.is_fallback,
        source=tenant.source.value,
    )


@router.get("/api/tours/public")
async def public_tours(
    category: Optional[int] = Query(None, description="Category id"),
    featured: bool = Query(False),
    limit: Optional[int] = Query(None, ge=1, le=200),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tours = await list_public_tours(
        session, tenant.tenant_id, category_id=category, featured_only=featured, limit=limit
    )
    return success_response(
        [tour_to_dict(t) for t in tours],
        meta={"tenantId": tenant.tenant_id, "count": len(tours)},
    )


@router.get("/api/categories")
async def categories(
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    rows = await list_categories(session, tenant.tenant_id)
    return success_response([category_to_dict(c) for c in rows])


# ────────────────────────────────────────────────────────────────
# Offers & Discounts
# ────────────────────────────────────────────────────────────────

class OfferBatchRequest(BaseModel):
    tour_ids: Optional[list[Any]] = Field(default=None, alias="tourIds")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")

    model_config = {"populate_by_name": True}


@router.post("/api/offers/batch")
async def offers_batch(
    body: OfferBatchRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    if not body.tour_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tourIds array is required")
    tenant_id = _body_tenant(body.tenant_id, tenant)
    return success_response(await batch_offer_badges(session, tenant_id, body.tour_ids))


@router.get("/api/offers/tour/{tour_id}")
async def tour_offers(
    tour_id: int,
    travel_date: Optional[date] = Query(None, alias="travelDate"),
    group_size: int = Query(1, alias="groupSize", ge=1),
    option_type: Optional[str] = Query(None, alias="optionType"),
    session: AsyncSession = Depends(get_session),
):
    tour = await _published_tour(session, tour_id)
    evaluated = await evaluate_tour_offers(
        session, tour, travel_date=travel_date, group_size=group_size, option_type=option_type
    )
    return success_response(evaluated.to_dict())


class DiscountVerifyRequest(BaseModel):
    code: Optional[str] = None
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    tour_id: Optional[int] = Field(default=None, alias="tourId")
    price: Optional[float] = Field(default=None, ge=0)

    model_config = {"populate_by_name": True}


@router.post("/api/discounts/verify")
async def verify_discount(
    body: DiscountVerifyRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tenant_id = _body_tenant(body.tenant_id, tenant)
    try:
        verified = await verify_promo_code(
            session, tenant_id, body.code, tour_id=body.tour_id, price=body.price
        )
    except PromoCodeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return success_response(verified.to_dict(body.price))


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

@router.get("/api/availability/{tour_id}")
async def tour_availability(
    tour_id: int,
    day: Optional[date] = Query(None, alias="date"),
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tour = await _published_tour(session, tour_id)

    if day is not None:
        start = end = day
    elif month and year:
        start, end = month_bounds(year, month)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide either ?date=YYYY-MM-DD or ?month=MM&year=YYYY",
        )

    calendar = await availability_calendar(session, tenant.tenant_id, tour, start, end)
    if day is not None:
        entry = calendar["days"][day.isoformat()]
        return success_response(
            {
                "tourId": tour.id,
                "date": day.isoformat(),
                "options": tour_options(tour),
                "stopSaleStatus": entry["status"],
                "stoppedOptionIds": entry["stoppedOptionIds"],
                "reasons": entry["reasons"],
                "availability": entry["availability"],
            }
        )
    return success_response(calendar)


# ────────────────────────────────────────────────────────────────
# Blog
# ────────────────────────────────────────────────────────────────

@router.post(
    "/api/blog/{slug}/like",
    dependencies=[
        Depends(
            rate_limit_dependency(
                settings.blog_like_limit, settings.blog_like_window_seconds, scope="blog-like"
            )
        )
    ],
)
async def like_blog_post(
    slug: str,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        update(BlogPost)
        .where(
            BlogPost.tenant_id == tenant.tenant_id,
            BlogPost.slug == slug,
            BlogPost.is_published.is_(True),
        )
        .values(likes=BlogPost.likes + 1)
        .returning(BlogPost.likes)
    )
    likes = result.scalar_one_or_none()
    if likes is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blog post not found")
    await session.commit()
    return success_response({"likes": likes}, message="Blog post liked successfully")


# ────────────────────────────────────────────────────────────────
# SEO
# ────────────────────────────────────────────────────────────────

@router.get("/robots.txt", response_class=PlainTextResponse)
async def robots_txt(
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    resolved = await get_tenant_config(session, tenant.tenant_id)
    return PlainTextResponse(build_robots_txt(tenant_base_url(resolved.config)))


@router.get("/sitemap.xml")
async def sitemap_xml(
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    resolved = await get_tenant_config(session, tenant.tenant_id)
    xml = await build_sitemap_xml(session, tenant.tenant_id, tenant_base_url(resolved.config))
    return Response(content=xml, media_type="application/xml")
