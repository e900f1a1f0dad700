"""
Admin back-office API.

Every route needs an admin token (scope "admin") carrying the listed
permission; super admins pass every check. Mutations write an AuditLog row
in the same transaction as the change.

    Bookings (manageBookings)
        GET    /api/admin/bookings
        PATCH  /api/admin/bookings/{id}
        POST   /api/admin/bookings/{id}/cancel
        POST   /api/admin/bookings/{id}/refund

    Promotions (manageDiscounts)
        GET    /api/admin/offers            POST /api/admin/offers
        PUT    /api/admin/offers/{id}       DELETE /api/admin/offers/{id}
        GET    /api/admin/discounts         POST /api/admin/discounts
        PUT    /api/admin/discounts/{id}    DELETE /api/admin/discounts/{id}

    Availability (manageTours)
        GET    /api/admin/availability/{tour_id}?month=&year=
        POST   /api/admin/availability
        PUT    /api/admin/availability/bulk
        PUT    /api/admin/stop-sale
        DELETE /api/admin/stop-sale
        GET    /api/admin/stop-sale/logs

    Catalog (manageTours)
        GET    /api/admin/tours             POST /api/admin/tours
        GET    /api/admin/tours/{id}        PUT  /api/admin/tours/{id}
        DELETE /api/admin/tours/{id}
        GET    /api/admin/categories        POST /api/admin/categories
        PUT    /api/admin/categories/{id}   DELETE /api/admin/categories/{id}
        GET    /api/admin/destinations      POST /api/admin/destinations
        PUT    /api/admin/destinations/{id} DELETE /api/admin/destinations/{id}

    Tenants (manageTenants)
        GET    /api/admin/tenants
        POST   /api/admin/tenants
        PUT    /api/admin/tenants/{tenant_id}

    Dashboard (manageDashboard)
        GET    /api/admin/dashboard

``?tenantId=all`` widens the listings to every tenant for super admins.
"""

import asyncio
import logging
import math
import re
import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import (
    AUDIT_AVAILABILITY_UPDATED,
    AUDIT_BOOKING_CANCELLED,
    AUDIT_BOOKING_REFUNDED,
    AUDIT_BOOKING_STATUS_CHANGED,
    AUDIT_CATEGORY_CREATED,
    AUDIT_CATEGORY_DELETED,
    AUDIT_CATEGORY_UPDATED,
    AUDIT_DESTINATION_CREATED,
    AUDIT_DESTINATION_DELETED,
    AUDIT_DESTINATION_UPDATED,
    AUDIT_DISCOUNT_CREATED,
    AUDIT_DISCOUNT_DELETED,
    AUDIT_DISCOUNT_UPDATED,
    AUDIT_OFFER_CREATED,
    AUDIT_OFFER_DELETED,
    AUDIT_OFFER_UPDATED,
    AUDIT_STOP_SALE_APPLIED,
    AUDIT_STOP_SALE_REMOVED,
    AUDIT_TENANT_CREATED,
    AUDIT_TENANT_UPDATED,
    AUDIT_TOUR_CREATED,
    AUDIT_TOUR_DELETED,
    AUDIT_TOUR_UPDATED,
    PERM_MANAGE_BOOKINGS,
    PERM_MANAGE_DISCOUNTS,
    PERM_MANAGE_TENANTS,
    PERM_MANAGE_TOURS,
    PERM_VIEW_DASHBOARD,
    RequestContext,
    assert_tenant_scoped_row,
    log_audit,
    require_admin,
)
from .availability import (
    BULK_ACTIONS,
    apply_stop_sale,
    availability_calendar,
    bulk_update_availability,
    list_stop_sale_logs,
    month_bounds,
    remove_stop_sale,
    stop_sale_log_to_dict,
    upsert_availability,
)
from .booking_lifecycle import (
    TERMINAL_DB_VALUES,
    CancelRequest,
    RefundRequest,
    StatusUpdateRequest,
    cancel_booking,
    get_booking,
    get_booking_tour,
    refund_booking,
    update_booking_status,
)
from .booking_status import BookingStatus, status_filter_values, to_booking_status_code
from .core.config import get_settings
from .core.db import get_session
from .core.responses import success_response
from .models import (
    Availability,
    AvailabilitySlot,
    Booking,
    Category,
    Destination,
    Discount,
    SpecialOffer,
    StopSale,
    StopSaleLog,
    Tenant,
    Tour,
)
from .notifications import send_cancellation_confirmation, send_status_update
from .offers import OFFER_TYPES, PROMO_CODE, as_utc
from .routes_public import category_to_dict, tour_to_dict
from .tenancy import (
    ALL_TENANTS,
    DEFAULT_TENANT_ID,
    SHARED_TENANT_ID,
    TenantContext,
    build_tenant_clause,
    clear_tenant_cache,
    default_tenant_config,
    generate_preview_url,
    get_tenant_config,
    get_tenant_context,
    tenant_public_config,
)

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ────────────────────────────────────────────────────────────────
# Shared Helpers
# ────────────────────────────────────────────────────────────────

def scope_for_admin(raw_tenant_id: Optional[str], tenant: TenantContext, admin: RequestContext) -> Optional[str]:
    """
    Tenant an admin listing is restricted to; None means every tenant.

    Raises:
        HTTPException 403: ``all`` requested by an admin who is not a super admin
    """
    raw = (raw_tenant_id or "").strip()
    if raw == ALL_TENANTS:
        if not admin.is_super_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only super admins can view every tenant.",
            )
        return None
    return tenant.tenant_id


def _target_tenant(body_tenant_id: Optional[str], tenant: TenantContext, admin: RequestContext) -> str:
    tenant_id = (body_tenant_id or "").strip() or tenant.tenant_id
    if tenant_id == ALL_TENANTS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid tenantId")
    assert_tenant_scoped_row(tenant_id, tenant.tenant_id, admin)
    return tenant_id


async def _admin_tour(session: AsyncSession, tour_id: int, tenant_id: str, admin: RequestContext) -> Tour:
    """A tour the tenant sells: its own, or one inherited from the default catalog."""
    tour = await session.get(Tour, tour_id)
    if tour is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tour not found")
    if tour.tenant_id not in (None, tenant_id, DEFAULT_TENANT_ID):
        assert_tenant_scoped_row(tour.tenant_id, tenant_id, admin)
    return tour


def _actor(admin: RequestContext) -> str:
    return admin.email or admin.user_id


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

PAGE_SIZES = (10, 20, 50)
DEFAULT_PAGE_SIZE = 10
DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

BOOKING_SORTS = {
    "createdAt_desc": Booking.created_at.desc(),
    "createdAt_asc": Booking.created_at.asc(),
    "activityDate_desc": Booking.date.desc(),
    "activityDate_asc": Booking.date.asc(),
}
DEFAULT_BOOKING_SORT = "createdAt_desc"


def _to_int(raw: Optional[str], default: int) -> int:
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def resolve_pagination(page_raw: Optional[str], limit_raw: Optional[str]) -> tuple[int, int, int]:
    """
    (page, limit, offset). Page floors at 1; limit must be one of PAGE_SIZES.

    Example:
        resolve_pagination("3", "20") -> (3, 20, 40)
        resolve_pagination("x", "15") -> (1, 10, 0)
    """
    page = max(1, _to_int(page_raw, 1))
    limit = _to_int(limit_raw, DEFAULT_PAGE_SIZE)
    if limit not in PAGE_SIZES:
        limit = DEFAULT_PAGE_SIZE
    return page, limit, (page - 1) * limit


def resolve_sort(sort: Optional[str]):
    return BOOKING_SORTS.get(sort or "", BOOKING_SORTS[DEFAULT_BOOKING_SORT])


def parse_day(raw: Optional[str]) -> Optional[date]:
    """``YYYY-MM-DD`` or None; anything else is ignored rather than rejected."""
    if not raw or not DAY_PATTERN.match(raw):
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def build_booking_filters(
    *,
    status_value: Optional[str] = None,
    tour_id: Optional[str] = None,
    purchase_from: Optional[str] = None,
    purchase_to: Optional[str] = None,
    activity_from: Optional[str] = None,
    activity_to: Optional[str] = None,
) -> list:
    """
    WHERE criteria for the admin booking list.

    Purchase dates bound ``created_at`` over whole UTC days; activity dates
    bound the tour date. Unknown statuses still filter (and match nothing).
    """
    criteria = []

    if status_value and status_value != "all":
        spellings = status_filter_values(status_value)
        criteria.append(Booking.status.in_(spellings) if spellings else Booking.status == status_value)

    if tour_id and tour_id.isdigit():
        criteria.append(Booking.tour_id == int(tour_id))

    start = parse_day(purchase_from)
    if start:
        criteria.append(Booking.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc))
    end = parse_day(purchase_to)
    if end:
        criteria.append(Booking.created_at <= datetime.combine(end, time.max, tzinfo=timezone.utc))

    start = parse_day(activity_from)
    if start:
        criteria.append(Booking.date >= start)
    end = parse_day(activity_to)
    if end:
        criteria.append(Booking.date <= end)

    return criteria


async def _admin_booking(
    session: AsyncSession, booking_id: str, tenant: TenantContext, admin: RequestContext
) -> Booking:
    booking = await get_booking(session, booking_id)
    assert_tenant_scoped_row(booking.tenant_id, tenant.tenant_id, admin)
    return booking


@router.get("/bookings")
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    tour_id: Optional[str] = Query(None, alias="tourId"),
    purchase_from: Optional[str] = Query(None, alias="purchaseFrom"),
    purchase_to: Optional[str] = Query(None, alias="purchaseTo"),
    activity_from: Optional[str] = Query(None, alias="activityFrom"),
    activity_to: Optional[str] = Query(None, alias="activityTo"),
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_BOOKINGS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    criteria = build_booking_filters(
        status_value=status_filter,
        tour_id=tour_id,
        purchase_from=purchase_from,
        purchase_to=purchase_to,
        activity_from=activity_from,
        activity_to=activity_to,
    )
    if scope is not None:
        criteria.append(Booking.tenant_id == scope)

    page_no, page_size, offset = resolve_pagination(page, limit)
    total = await session.scalar(select(func.count()).select_from(Booking).where(*criteria)) or 0
    result = await session.execute(
        select(Booking)
        .where(*criteria)
        .order_by(resolve_sort(sort), Booking.booking_reference)
        .limit(page_size)
        .offset(offset)
    )
    bookings = result.scalars().all()

    return success_response(
        [b.to_dict() for b in bookings],
        meta={
            "page": page_no,
            "limit": page_size,
            "total": total,
            "totalPages": math.ceil(total / page_size) if total else 0,
            "tenantId": scope or ALL_TENANTS,
        },
    )


@router.patch("/bookings/{booking_id}")
async def update_status(
    booking_id: str,
    body: StatusUpdateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_BOOKINGS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await _admin_booking(session, booking_id, tenant, admin)
    previous = await update_booking_status(session, booking, body.status)
    changed = previous != booking.status

    if changed:
        await log_audit(
            session,
            actor_user_id=admin.user_id,
            action=AUDIT_BOOKING_STATUS_CHANGED,
            tenant_id=booking.tenant_id,
            target_type="booking",
            target_id=str(booking.id),
            metadata={"from": previous, "to": booking.status},
        )
    await session.commit()

    if changed:
        tour = await get_booking_tour(session, booking)
        if tour is not None:
            tenant_config = (await get_tenant_config(session, booking.tenant_id)).config
            await send_status_update(booking, tour, tenant_config, previous)

    return success_response(booking.to_dict(), message="Booking status updated", previousStatus=previous)


@router.post("/bookings/{booking_id}/cancel")
async def admin_cancel(
    booking_id: str,
    body: Optional[CancelRequest] = None,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_BOOKINGS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await _admin_booking(session, booking_id, tenant, admin)
    result = await cancel_booking(session, booking, cancelled_by="admin", reason=body.reason if body else None)
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_BOOKING_CANCELLED,
        tenant_id=booking.tenant_id,
        target_type="booking",
        target_id=str(booking.id),
        metadata=dict(result.to_dict(), cancelledBy="admin"),
    )
    await session.commit()

    tour = await get_booking_tour(session, booking)
    if tour is not None:
        tenant_config = (await get_tenant_config(session, booking.tenant_id)).config
        await send_cancellation_confirmation(booking, tour, tenant_config, result.refund_amount, result.reason)

    return success_response(
        booking.to_dict(),
        message="Booking cancelled successfully",
        refundAmount=result.refund_amount,
        refundPercentage=result.refund_percentage,
        cancelledBy="admin",
    )


@router.post("/bookings/{booking_id}/refund")
async def admin_refund(
    booking_id: str,
    body: Optional[RefundRequest] = None,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_BOOKINGS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await _admin_booking(session, booking_id, tenant, admin)
    await refund_booking(
        session,
        booking,
        amount=body.amount if body else None,
        reason=body.reason if body else None,
    )
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_BOOKING_REFUNDED,
        tenant_id=booking.tenant_id,
        target_type="booking",
        target_id=str(booking.id),
        metadata={"refundAmount": booking.refund_amount, "status": booking.status},
    )
    await session.commit()

    return success_response(
        booking.to_dict(),
        message="Refund recorded",
        refundAmount=booking.refund_amount,
        refundPercentage=booking.refund_percentage,
    )


# ────────────────────────────────────────────────────────────────
# Special Offers
# ────────────────────────────────────────────────────────────────

def _normalize_code(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    return v.strip().upper() or None


class OfferCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: str
    discount_value: float = Field(..., alias="discountValue", ge=0)
    code: Optional[str] = Field(default=None, max_length=64)
    min_days_in_advance: Optional[int] = Field(default=None, alias="minDaysInAdvance", ge=0)
    max_days_before_tour: Optional[int] = Field(default=None, alias="maxDaysBeforeTour", ge=0)
    min_booking_value: Optional[float] = Field(default=None, alias="minBookingValue", ge=0)
    max_discount: Optional[float] = Field(default=None, alias="maxDiscount", ge=0)
    min_group_size: Optional[int] = Field(default=None, alias="minGroupSize", ge=1)
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")
    travel_start_date: Optional[datetime] = Field(default=None, alias="travelStartDate")
    travel_end_date: Optional[datetime] = Field(default=None, alias="travelEndDate")
    blackout_dates: list[date] = Field(default_factory=list, alias="blackoutDates")
    applicable_tours: list[int] = Field(default_factory=list, alias="applicableTours")
    tour_option_selections: list[dict[str, Any]] = Field(default_factory=list, alias="tourOptionSelections")
    excluded_tours: list[int] = Field(default_factory=list, alias="excludedTours")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)
    is_active: bool = Field(default=True, alias="isActive")
    is_featured: bool = Field(default=False, alias="isFeatured")
    featured_badge_text: Optional[str] = Field(default=None, alias="featuredBadgeText", max_length=64)
    priority: int = 0

    model_config = {"populate_by_name": True}

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> str:
        if v not in OFFER_TYPES:
            raise ValueError(f"type must be one of: {', '.join(OFFER_TYPES)}")
        return v

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_code(v)


class OfferUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    type: Optional[str] = None
    discount_value: Optional[float] = Field(default=None, alias="discountValue", ge=0)
    code: Optional[str] = Field(default=None, max_length=64)
    min_days_in_advance: Optional[int] = Field(default=None, alias="minDaysInAdvance", ge=0)
    max_days_before_tour: Optional[int] = Field(default=None, alias="maxDaysBeforeTour", ge=0)
    min_booking_value: Optional[float] = Field(default=None, alias="minBookingValue", ge=0)
    max_discount: Optional[float] = Field(default=None, alias="maxDiscount", ge=0)
    min_group_size: Optional[int] = Field(default=None, alias="minGroupSize", ge=1)
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    travel_start_date: Optional[datetime] = Field(default=None, alias="travelStartDate")
    travel_end_date: Optional[datetime] = Field(default=None, alias="travelEndDate")
    blackout_dates: Optional[list[date]] = Field(default=None, alias="blackoutDates")
    applicable_tours: Optional[list[int]] = Field(default=None, alias="applicableTours")
    tour_option_selections: Optional[list[dict[str, Any]]] = Field(default=None, alias="tourOptionSelections")
    excluded_tours: Optional[list[int]] = Field(default=None, alias="excludedTours")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_featured: Optional[bool] = Field(default=None, alias="isFeatured")
    featured_badge_text: Optional[str] = Field(default=None, alias="featuredBadgeText", max_length=64)
    priority: Optional[int] = None

    model_config = {"populate_by_name": True}

    @field_validator("type")
    @classmethod
    def known_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in OFFER_TYPES:
            raise ValueError(f"type must be one of: {', '.join(OFFER_TYPES)}")
        return v

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_code(v)


def _offer_columns(data: dict) -> dict:
    """Request fields -> SpecialOffer columns (dates in JSON columns as ISO strings)."""
    if data.get("blackout_dates") is not None:
        data["blackout_dates"] = [d.isoformat() for d in data["blackout_dates"]]
    return data


def validate_offer(offer: SpecialOffer) -> None:
    """
    Cross-field rules checked after create/update values are applied.

    Raises:
        HTTPException 400
    """
    if as_utc(offer.end_date) <= as_utc(offer.start_date):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must be after start date")
    if (
        offer.travel_start_date
        and offer.travel_end_date
        and as_utc(offer.travel_end_date) < as_utc(offer.travel_start_date)
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Travel end date must be on or after travel start date",
        )
    if offer.type != "fixed" and (offer.discount_value or 0) > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Percentage discounts cannot exceed 100",
        )
    if offer.type == PROMO_CODE and not offer.code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Promo code offers require a code")


async def ensure_code_free(
    session: AsyncSession,
    tenant_id: str,
    code: Optional[str],
    *,
    offer_id: Optional[int] = None,
    discount_id: Optional[int] = None,
) -> None:
    """
    Codes are unique per tenant across offers and discounts, because checkout
    looks a code up in both tables.

    Raises:
        HTTPException 409
    """
    if not code:
        return
    offer_q = select(SpecialOffer.id).where(SpecialOffer.tenant_id == tenant_id, SpecialOffer.code == code)
    if offer_id is not None:
        offer_q = offer_q.where(SpecialOffer.id != offer_id)
    discount_q = select(Discount.id).where(Discount.tenant_id == tenant_id, Discount.code == code)
    if discount_id is not None:
        discount_q = discount_q.where(Discount.id != discount_id)

    taken = (await session.execute(offer_q.limit(1))).first() or (await session.execute(discount_q.limit(1))).first()
    if taken:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Code {code} is already in use")


def _iso(value: Any) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def offer_to_dict(offer: SpecialOffer) -> dict:
    return {
        "id": offer.id,
        "tenantId": offer.tenant_id,
        "name": offer.name,
        "description": offer.description,
        "type": offer.type,
        "discountValue": offer.discount_value,
        "code": offer.code,
        "minDaysInAdvance": offer.min_days_in_advance,
        "maxDaysBeforeTour": offer.max_days_before_tour,
        "minBookingValue": offer.min_booking_value,
        "maxDiscount": offer.max_discount,
        "minGroupSize": offer.min_group_size,
        "startDate": _iso(offer.start_date),
        "endDate": _iso(offer.end_date),
        "travelStartDate": _iso(offer.travel_start_date),
        "travelEndDate": _iso(offer.travel_end_date),
        "blackoutDates": offer.blackout_dates or [],
        "applicableTours": offer.applicable_tours or [],
        "tourOptionSelections": offer.tour_option_selections or [],
        "excludedTours": offer.excluded_tours or [],
        "usageLimit": offer.usage_limit,
        "usedCount": offer.used_count,
        "isActive": offer.is_active,
        "isFeatured": offer.is_featured,
        "featuredBadgeText": offer.featured_badge_text,
        "priority": offer.priority,
    }


async def _admin_offer(session: AsyncSession, offer_id: int, tenant: TenantContext, admin: RequestContext) -> SpecialOffer:
    offer = await session.get(SpecialOffer, offer_id)
    if offer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Offer not found")
    assert_tenant_scoped_row(offer.tenant_id, tenant.tenant_id, admin)
    return offer


@router.get("/offers")
async def list_offers(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    stmt = select(SpecialOffer).order_by(SpecialOffer.priority.desc(), SpecialOffer.created_at.desc())
    if scope is not None:
        stmt = stmt.where(SpecialOffer.tenant_id == scope)
    offers = (await session.execute(stmt)).scalars().all()
    return success_response([offer_to_dict(o) for o in offers], meta={"count": len(offers)})


@router.post("/offers", status_code=status.HTTP_201_CREATED)
async def create_offer(
    body: OfferCreateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    offer = SpecialOffer(tenant_id=tenant.tenant_id, used_count=0, **_offer_columns(body.model_dump()))
    validate_offer(offer)
    await ensure_code_free(session, tenant.tenant_id, offer.code)

    session.add(offer)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_OFFER_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="special_offer",
        target_id=str(offer.id),
        metadata={"type": offer.type, "code": offer.code},
    )
    await session.commit()
    return success_response(offer_to_dict(offer))


@router.put("/offers/{offer_id}")
async def update_offer(
    offer_id: int,
    body: OfferUpdateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    offer = await _admin_offer(session, offer_id, tenant, admin)
    changes = _offer_columns(body.model_dump(exclude_unset=True))
    for field, value in changes.items():
        setattr(offer, field, value)

    validate_offer(offer)
    if "code" in changes:
        await ensure_code_free(session, offer.tenant_id, offer.code, offer_id=offer.id)

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_OFFER_UPDATED,
        tenant_id=offer.tenant_id,
        target_type="special_offer",
        target_id=str(offer.id),
        metadata={"fields": sorted(changes)},
    )
    await session.commit()
    return success_response(offer_to_dict(offer))


@router.delete("/offers/{offer_id}")
async def delete_offer(
    offer_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    offer = await _admin_offer(session, offer_id, tenant, admin)
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_OFFER_DELETED,
        tenant_id=offer.tenant_id,
        target_type="special_offer",
        target_id=str(offer.id),
        metadata={"name": offer.name},
    )
    await session.delete(offer)
    await session.commit()
    return success_response({"id": offer_id}, message="Offer deleted")


# ────────────────────────────────────────────────────────────────
# Discount Codes
# ────────────────────────────────────────────────────────────────

class DiscountCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    discount_type: Literal["percentage", "fixed"] = Field(..., alias="discountType")
    value: float = Field(..., gt=0)
    is_active: bool = Field(default=True, alias="isActive")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)

    model_config = {"populate_by_name": True}

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        code = _normalize_code(v)
        if not code:
            raise ValueError("code must not be blank")
        return code


class DiscountUpdateRequest(BaseModel):
    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    discount_type: Optional[Literal["percentage", "fixed"]] = Field(default=None, alias="discountType")
    value: Optional[float] = Field(default=None, gt=0)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)

    model_config = {"populate_by_name": True}

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_code(v)


def discount_to_dict(discount: Discount) -> dict:
    return {
        "id": discount.id,
        "tenantId": discount.tenant_id,
        "code": discount.code,
        "discountType": discount.discount_type,
        "value": discount.value,
        "isActive": discount.is_active,
        "expiresAt": _iso(discount.expires_at),
        "usageLimit": discount.usage_limit,
        "timesUsed": discount.times_used,
    }


def _validate_discount(discount: Discount) -> None:
    if not discount.code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Discount code is required")
    if discount.discount_type == "percentage" and discount.value > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Percentage discounts cannot exceed 100",
        )


async def _admin_discount(
    session: AsyncSession, discount_id: int, tenant: TenantContext, admin: RequestContext
) -> Discount:
    discount = await session.get(Discount, discount_id)
    if discount is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Discount not found")
    assert_tenant_scoped_row(discount.tenant_id, tenant.tenant_id, admin)
    return discount


@router.get("/discounts")
async def list_discounts(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    stmt = select(Discount).order_by(Discount.created_at.desc())
    if scope is not None:
        stmt = stmt.where(Discount.tenant_id == scope)
    discounts = (await session.execute(stmt)).scalars().all()
    return success_response([discount_to_dict(d) for d in discounts], meta={"count": len(discounts)})


@router.post("/discounts", status_code=status.HTTP_201_CREATED)
async def create_discount(
    body: DiscountCreateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    discount = Discount(tenant_id=tenant.tenant_id, times_used=0, **body.model_dump())
    _validate_discount(discount)
    await ensure_code_free(session, tenant.tenant_id, discount.code)

    session.add(discount)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DISCOUNT_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="discount",
        target_id=str(discount.id),
        metadata={"code": discount.code},
    )
    await session.commit()
    return success_response(discount_to_dict(discount))


@router.put("/discounts/{discount_id}")
async def update_discount(
    discount_id: int,
    body: DiscountUpdateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    discount = await _admin_discount(session, discount_id, tenant, admin)
    changes = body.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(discount, field, value)

    _validate_discount(discount)
    if "code" in changes:
        await ensure_code_free(session, discount.tenant_id, discount.code, discount_id=discount.id)

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DISCOUNT_UPDATED,
        tenant_id=discount.tenant_id,
        target_type="discount",
        target_id=str(discount.id),
        metadata={"fields": sorted(changes)},
    )
    await session.commit()
    return success_response(discount_to_dict(discount))


@router.delete("/discounts/{discount_id}")
async def delete_discount(
    discount_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_DISCOUNTS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    discount = await _admin_discount(session, discount_id, tenant, admin)
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DISCOUNT_DELETED,
        tenant_id=discount.tenant_id,
        target_type="discount",
        target_id=str(discount.id),
        metadata={"code": discount.code},
    )
    await session.delete(discount)
    await session.commit()
    return success_response({"id": discount_id}, message="Discount deleted")


# ────────────────────────────────────────────────────────────────
# Availability & Stop-Sales
# ────────────────────────────────────────────────────────────────

class SlotPayload(BaseModel):
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    capacity: int = Field(default=10, ge=0)
    extra_capacity: int = Field(default=0, alias="extraCapacity", ge=0)
    blocked: bool = False
    block_reason: Optional[str] = Field(default=None, alias="blockReason", max_length=255)
    price: Optional[float] = Field(default=None, ge=0)

    model_config = {"populate_by_name": True}

    def to_slot(self) -> dict:
        return self.model_dump()


def _slot_dicts(slots: Optional[list[SlotPayload]]) -> Optional[list[dict]]:
    if slots is None:
        return None
    times = [s.time for s in slots]
    if len(times) != len(set(times)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Duplicate slot times")
    return [s.to_slot() for s in slots]


class AvailabilityUpsertRequest(BaseModel):
    tour_id: Optional[int] = Field(default=None, alias="tourId")
    day: Optional[date] = Field(default=None, alias="date")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    option_id: Optional[str] = Field(default=None, alias="optionId")
    slots: list[SlotPayload] = Field(default_factory=list)
    stop_sale: bool = Field(default=False, alias="stopSale")
    stop_sale_reason: Optional[str] = Field(default=None, alias="stopSaleReason", max_length=255)
    notes: Optional[str] = None

    model_config = {"populate_by_name": True}


class AvailabilityBulkRequest(BaseModel):
    tour_id: int = Field(..., alias="tourId")
    dates: list[date] = Field(..., min_length=1, max_length=366)
    action: str
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    slots: Optional[list[SlotPayload]] = None
    stop_sale: Optional[bool] = Field(default=None, alias="stopSale")
    stop_sale_reason: Optional[str] = Field(default=None, alias="stopSaleReason", max_length=255)

    model_config = {"populate_by_name": True}


class StopSaleRequest(BaseModel):
    tour_id: int = Field(..., alias="tourId")
    option_ids: list[str] = Field(default_factory=list, alias="optionIds")
    start_date: date = Field(..., alias="startDate")
    end_date: date = Field(..., alias="endDate")
    reason: Optional[str] = Field(default=None, max_length=255)
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")

    model_config = {"populate_by_name": True}


def _check_range(start: date, end: date) -> None:
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="endDate must be on or after startDate",
        )


@router.get("/availability/{tour_id}")
async def admin_availability(
    tour_id: int,
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tour = await _admin_tour(session, tour_id, tenant.tenant_id, admin)
    start, end = month_bounds(year, month)
    return success_response(await availability_calendar(session, tenant.tenant_id, tour, start, end))


@router.post("/availability")
async def upsert_day(
    body: AvailabilityUpsertRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    if body.tour_id is None or body.day is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tourId and date are required")
    tenant_id = _target_tenant(body.tenant_id, tenant, admin)
    await _admin_tour(session, body.tour_id, tenant_id, admin)

    record = await upsert_availability(
        session,
        tenant_id=tenant_id,
        tour_id=body.tour_id,
        day=body.day,
        slots=_slot_dicts(body.slots),
        stop_sale=body.stop_sale,
        stop_sale_reason=body.stop_sale_reason,
        notes=body.notes,
        option_id=body.option_id,
    )
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_AVAILABILITY_UPDATED,
        tenant_id=tenant_id,
        target_type="availability",
        target_id=str(record.id),
        metadata={"tourId": body.tour_id, "date": body.day.isoformat(), "slots": len(body.slots)},
    )
    await session.commit()
    return success_response(
        {"id": record.id, "tourId": record.tour_id, "date": record.date.isoformat()},
        message="Availability saved",
    )


@router.put("/availability/bulk")
async def bulk_update(
    body: AvailabilityBulkRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    if body.action not in BULK_ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"action must be one of: {', '.join(BULK_ACTIONS)}",
        )
    tenant_id = _target_tenant(body.tenant_id, tenant, admin)
    await _admin_tour(session, body.tour_id, tenant_id, admin)

    try:
        result = await bulk_update_availability(
            session,
            tenant_id=tenant_id,
            tour_id=body.tour_id,
            dates=sorted(set(body.dates)),
            action=body.action,
            slots=_slot_dicts(body.slots),
            stop_sale=body.stop_sale,
            stop_sale_reason=body.stop_sale_reason,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_AVAILABILITY_UPDATED,
        tenant_id=tenant_id,
        target_type="tour",
        target_id=str(body.tour_id),
        metadata=dict(result, action=body.action, days=len(body.dates)),
    )
    await session.commit()
    return success_response(result)


@router.put("/stop-sale")
async def put_stop_sale(
    body: StopSaleRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    _check_range(body.start_date, body.end_date)
    tenant_id = _target_tenant(body.tenant_id, tenant, admin)
    await _admin_tour(session, body.tour_id, tenant_id, admin)

    result = await apply_stop_sale(
        session,
        tenant_id=tenant_id,
        tour_id=body.tour_id,
        option_ids=body.option_ids,
        start=body.start_date,
        end=body.end_date,
        reason=body.reason,
        applied_by=_actor(admin),
    )
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_STOP_SALE_APPLIED,
        tenant_id=tenant_id,
        target_type="tour",
        target_id=str(body.tour_id),
        metadata={
            "startDate": body.start_date.isoformat(),
            "endDate": body.end_date.isoformat(),
            "optionIds": body.option_ids,
        },
    )
    await session.commit()
    return success_response(result, message="Stop-sale applied")


@router.delete("/stop-sale")
async def delete_stop_sale(
    body: StopSaleRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    _check_range(body.start_date, body.end_date)
    tenant_id = _target_tenant(body.tenant_id, tenant, admin)
    await _admin_tour(session, body.tour_id, tenant_id, admin)

    result = await remove_stop_sale(
        session,
        tenant_id=tenant_id,
        tour_id=body.tour_id,
        option_ids=body.option_ids,
        start=body.start_date,
        end=body.end_date,
        removed_by=_actor(admin),
    )
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_STOP_SALE_REMOVED,
        tenant_id=tenant_id,
        target_type="tour",
        target_id=str(body.tour_id),
        metadata=dict(result, startDate=body.start_date.isoformat(), endDate=body.end_date.isoformat()),
    )
    await session.commit()
    return success_response(result, message="Stop-sale removed")


@router.get("/stop-sale/logs")
async def stop_sale_logs(
    tour_id: Optional[int] = Query(None, alias="tourId"),
    log_status: Optional[Literal["active", "removed"]] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    logs, total = await list_stop_sale_logs(
        session, scope, tour_id=tour_id, status=log_status, limit=limit, offset=offset
    )
    return success_response(
        [stop_sale_log_to_dict(log) for log in logs],
        meta={"total": total, "limit": limit, "offset": offset},
    )


# ────────────────────────────────────────────────────────────────
# Catalog: Tours, Categories, Destinations
# ────────────────────────────────────────────────────────────────

SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")

# Tour columns an update may clear with an explicit null
NULLABLE_TOUR_FIELDS = frozenset({"description", "discount_price", "duration", "image", "destination_id"})


def slugify(value: str) -> str:
    """``"Luxor West Bank & Valley"`` -> ``"luxor-west-bank-valley"``"""
    return SLUG_SEPARATORS.sub("-", value.lower()).strip("-")


class BookingOptionPayload(BaseModel):
    id: Optional[str] = Field(default=None, max_length=64)
    label: str = Field(..., min_length=1, max_length=255)
    type: Optional[str] = Field(default=None, max_length=32)
    price: float = Field(..., ge=0)
    description: Optional[str] = None

    model_config = {"extra": "allow"}


class TourCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    discount_price: Optional[float] = Field(default=None, alias="discountPrice", ge=0)
    duration: Optional[str] = Field(default=None, max_length=64)
    image: Optional[str] = Field(default=None, max_length=512)
    category_ids: list[int] = Field(default_factory=list, alias="categoryIds")
    destination_id: Optional[int] = Field(default=None, alias="destinationId")
    booking_options: list[BookingOptionPayload] = Field(default_factory=list, alias="bookingOptions")
    is_published: bool = Field(default=False, alias="isPublished")
    is_active: bool = Field(default=True, alias="isActive")
    is_featured: bool = Field(default=False, alias="isFeatured")

    model_config = {"populate_by_name": True}


class TourUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, gt=0)
    discount_price: Optional[float] = Field(default=None, alias="discountPrice", ge=0)
    duration: Optional[str] = Field(default=None, max_length=64)
    image: Optional[str] = Field(default=None, max_length=512)
    category_ids: Optional[list[int]] = Field(default=None, alias="categoryIds")
    destination_id: Optional[int] = Field(default=None, alias="destinationId")
    booking_options: Optional[list[BookingOptionPayload]] = Field(default=None, alias="bookingOptions")
    is_published: Optional[bool] = Field(default=None, alias="isPublished")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_featured: Optional[bool] = Field(default=None, alias="isFeatured")

    model_config = {"populate_by_name": True}


class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)


class DestinationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255)
    country: Optional[str] = Field(default=None, max_length=128)


def _booking_options(options: list[BookingOptionPayload]) -> list[dict]:
    """Every option keeps a stable id; bookings and stop-sales point at it."""
    cleaned = []
    for option in options:
        data = option.model_dump(exclude_none=True)
        data["id"] = option.id or uuid.uuid4().hex[:12]
        data["price"] = float(option.price)
        cleaned.append(data)
    ids = [o["id"] for o in cleaned]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking option ids must be unique")
    return cleaned


def _resolve_slug(raw_slug: Optional[str], name: str) -> str:
    slug = slugify(raw_slug or name)
    if not slug:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A slug could not be derived from the name")
    return slug


async def ensure_slug_free(
    session: AsyncSession, model, tenant_id: str, slug: str, *, exclude_id: Optional[int] = None
) -> None:
    """
    Raises:
        HTTPException 409: another row of the tenant already uses the slug
    """
    stmt = select(model.id).where(model.tenant_id == tenant_id, model.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    if (await session.execute(stmt.limit(1))).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Slug '{slug}' is already in use")


async def check_tour_references(
    session: AsyncSession, tenant_id: str, category_ids: Optional[list[int]], destination_id: Optional[int]
) -> None:
    """Categories and the destination must be the tenant's own or from the default catalog."""
    if category_ids:
        result = await session.execute(
            select(Category.id).where(
                Category.id.in_(category_ids), build_tenant_clause(Category, tenant_id, include_shared=True)
            )
        )
        missing = sorted(set(category_ids) - set(result.scalars().all()))
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown category id(s): {', '.join(str(m) for m in missing)}",
            )
    if destination_id is not None:
        found = await session.scalar(
            select(Destination.id).where(
                Destination.id == destination_id, build_tenant_clause(Destination, tenant_id, include_shared=True)
            )
        )
        if found is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown destination id: {destination_id}"
            )


def _validate_tour(tour: Tour) -> None:
    if tour.discount_price and tour.discount_price >= tour.price:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Discount price must be lower than the price",
        )


def admin_tour_to_dict(tour: Tour) -> dict:
    data = tour_to_dict(tour)
    data.update(
        isPublished=tour.is_published,
        isActive=tour.is_active,
        createdAt=_iso(tour.created_at),
    )
    return data


def destination_to_dict(destination: Destination) -> dict:
    return {
        "id": destination.id,
        "tenantId": destination.tenant_id,
        "name": destination.name,
        "slug": destination.slug,
        "country": destination.country,
    }


async def _owned_row(session: AsyncSession, model, row_id: int, label: str, tenant: TenantContext, admin: RequestContext):
    """Catalog rows are edited only by their own tenant; default-catalog rows are read-only elsewhere."""
    row = await session.get(model, row_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    assert_tenant_scoped_row(row.tenant_id, tenant.tenant_id, admin)
    return row


@router.get("/tours")
async def list_admin_tours(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    stmt = select(Tour).order_by(Tour.created_at.desc(), Tour.id.desc())
    if scope is not None:
        stmt = stmt.where(Tour.tenant_id == scope)
    tours = (await session.execute(stmt)).scalars().all()
    return success_response([admin_tour_to_dict(t) for t in tours], meta={"count": len(tours)})


@router.get("/tours/{tour_id}")
async def get_admin_tour(
    tour_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tour = await _owned_row(session, Tour, tour_id, "Tour", tenant, admin)
    return success_response(admin_tour_to_dict(tour))


@router.post("/tours", status_code=status.HTTP_201_CREATED)
async def create_tour(
    body: TourCreateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    slug = _resolve_slug(body.slug, body.title)
    await ensure_slug_free(session, Tour, tenant.tenant_id, slug)
    await check_tour_references(session, tenant.tenant_id, body.category_ids, body.destination_id)

    data = body.model_dump(exclude={"slug", "booking_options"})
    tour = Tour(tenant_id=tenant.tenant_id, slug=slug, booking_options=_booking_options(body.booking_options), **data)
    _validate_tour(tour)

    session.add(tour)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_TOUR_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="tour",
        target_id=str(tour.id),
        metadata={"slug": tour.slug},
    )
    await session.commit()
    return success_response(admin_tour_to_dict(tour))


@router.put("/tours/{tour_id}")
async def update_tour(
    tour_id: int,
    body: TourUpdateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    tour = await _owned_row(session, Tour, tour_id, "Tour", tenant, admin)
    changes = {
        k: v
        for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in NULLABLE_TOUR_FIELDS
    }

    if "slug" in changes:
        changes["slug"] = _resolve_slug(changes["slug"], changes.get("title") or tour.title)
        await ensure_slug_free(session, Tour, tour.tenant_id, changes["slug"], exclude_id=tour.id)
    if "category_ids" in changes or "destination_id" in changes:
        await check_tour_references(
            session, tour.tenant_id, changes.get("category_ids"), changes.get("destination_id")
        )
    if "booking_options" in changes:
        changes["booking_options"] = _booking_options(body.booking_options)

    for field, value in changes.items():
        setattr(tour, field, value)
    _validate_tour(tour)

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_TOUR_UPDATED,
        tenant_id=tour.tenant_id,
        target_type="tour",
        target_id=str(tour.id),
        metadata={"fields": sorted(changes)},
    )
    await session.commit()
    return success_response(admin_tour_to_dict(tour))


@router.delete("/tours/{tour_id}")
async def delete_tour(
    tour_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Tours with bookings are never deleted, so booking history keeps its tour;
    unpublish them instead. Calendar rows of a deletable tour go with it.
    """
    tour = await _owned_row(session, Tour, tour_id, "Tour", tenant, admin)
    bookings = await session.scalar(select(func.count(Booking.id)).where(Booking.tour_id == tour.id))
    if bookings:
        open_bookings = await session.scalar(
            select(func.count(Booking.id)).where(
                Booking.tour_id == tour.id, Booking.status.not_in(TERMINAL_DB_VALUES)
            )
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Tour has {bookings} booking(s), {open_bookings} still open; "
                "unpublish it instead of deleting"
            ),
        )

    day_ids = select(Availability.id).where(Availability.tour_id == tour.id)
    await session.execute(delete(AvailabilitySlot).where(AvailabilitySlot.availability_id.in_(day_ids)))
    await session.execute(delete(Availability).where(Availability.tour_id == tour.id))
    await session.execute(delete(StopSale).where(StopSale.tour_id == tour.id))
    await session.execute(delete(StopSaleLog).where(StopSaleLog.tour_id == tour.id))
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_TOUR_DELETED,
        tenant_id=tour.tenant_id,
        target_type="tour",
        target_id=str(tour.id),
        metadata={"slug": tour.slug},
    )
    await session.delete(tour)
    await session.commit()
    return success_response({"id": tour_id}, message="Tour deleted")


@router.get("/categories")
async def list_admin_categories(
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Category).where(build_tenant_clause(Category, tenant.tenant_id, include_shared=True))
    categories = (await session.execute(stmt.order_by(Category.name))).scalars().all()
    return success_response([category_to_dict(c) for c in categories], meta={"count": len(categories)})


@router.post("/categories", status_code=status.HTTP_201_CREATED)
async def create_category(
    body: CategoryRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    slug = _resolve_slug(body.slug, body.name)
    await ensure_slug_free(session, Category, tenant.tenant_id, slug)
    category = Category(tenant_id=tenant.tenant_id, name=body.name, slug=slug)
    session.add(category)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_CATEGORY_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="category",
        target_id=str(category.id),
        metadata={"slug": slug},
    )
    await session.commit()
    return success_response(category_to_dict(category))


@router.put("/categories/{category_id}")
async def update_category(
    category_id: int,
    body: CategoryRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    category = await _owned_row(session, Category, category_id, "Category", tenant, admin)
    slug = _resolve_slug(body.slug, body.name)
    await ensure_slug_free(session, Category, category.tenant_id, slug, exclude_id=category.id)
    category.name = body.name
    category.slug = slug
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_CATEGORY_UPDATED,
        tenant_id=category.tenant_id,
        target_type="category",
        target_id=str(category.id),
        metadata={"slug": slug},
    )
    await session.commit()
    return success_response(category_to_dict(category))


@router.delete("/categories/{category_id}")
async def delete_category(
    category_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    category = await _owned_row(session, Category, category_id, "Category", tenant, admin)
    # category_ids is a JSON list, so membership is checked in Python
    tour_categories = (await session.execute(select(Tour.category_ids))).scalars().all()
    in_use = sum(1 for ids in tour_categories if category.id in (ids or []))
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Category is used by {in_use} tour(s)",
        )

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_CATEGORY_DELETED,
        tenant_id=category.tenant_id,
        target_type="category",
        target_id=str(category.id),
        metadata={"slug": category.slug},
    )
    await session.delete(category)
    await session.commit()
    return success_response({"id": category_id}, message="Category deleted")


@router.get("/destinations")
async def list_admin_destinations(
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Destination).where(build_tenant_clause(Destination, tenant.tenant_id, include_shared=True))
    destinations = (await session.execute(stmt.order_by(Destination.name))).scalars().all()
    return success_response([destination_to_dict(d) for d in destinations], meta={"count": len(destinations)})


@router.post("/destinations", status_code=status.HTTP_201_CREATED)
async def create_destination(
    body: DestinationRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    slug = _resolve_slug(body.slug, body.name)
    await ensure_slug_free(session, Destination, tenant.tenant_id, slug)
    destination = Destination(tenant_id=tenant.tenant_id, name=body.name, slug=slug, country=body.country)
    session.add(destination)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DESTINATION_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="destination",
        target_id=str(destination.id),
        metadata={"slug": slug},
    )
    await session.commit()
    return success_response(destination_to_dict(destination))


@router.put("/destinations/{destination_id}")
async def update_destination(
    destination_id: int,
    body: DestinationRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    destination = await _owned_row(session, Destination, destination_id, "Destination", tenant, admin)
    slug = _resolve_slug(body.slug, body.name)
    await ensure_slug_free(session, Destination, destination.tenant_id, slug, exclude_id=destination.id)
    destination.name = body.name
    destination.slug = slug
    destination.country = body.country
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DESTINATION_UPDATED,
        tenant_id=destination.tenant_id,
        target_type="destination",
        target_id=str(destination.id),
        metadata={"slug": slug},
    )
    await session.commit()
    return success_response(destination_to_dict(destination))


@router.delete("/destinations/{destination_id}")
async def delete_destination(
    destination_id: int,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TOURS)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    destination = await _owned_row(session, Destination, destination_id, "Destination", tenant, admin)
    in_use = await session.scalar(select(func.count(Tour.id)).where(Tour.destination_id == destination.id))
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Destination is used by {in_use} tour(s)",
        )

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_DESTINATION_DELETED,
        tenant_id=destination.tenant_id,
        target_type="destination",
        target_id=str(destination.id),
        metadata={"slug": destination.slug},
    )
    await session.delete(destination)
    await session.commit()
    return success_response({"id": destination_id}, message="Destination deleted")


# ────────────────────────────────────────────────────────────────
# Tenants
# ────────────────────────────────────────────────────────────────

RESERVED_TENANT_IDS = frozenset({ALL_TENANTS, SHARED_TENANT_ID})

# Request key -> Tenant column for the JSON config sections
CONFIG_SECTIONS = {
    "branding": "branding",
    "seo": "seo",
    "contact": "contact",
    "features": "features",
    "payments": "payments",
    "email": "email_settings",
    "localization": "localization",
}


class TenantCreateRequest(BaseModel):
    tenant_id: str = Field(..., alias="tenantId", pattern=r"^[a-z0-9][a-z0-9-]{1,63}$")
    name: str = Field(..., min_length=1, max_length=255)
    domain: Optional[str] = Field(default=None, max_length=255)
    domains: Optional[list[str]] = None
    branding: Optional[dict[str, Any]] = None
    seo: Optional[dict[str, Any]] = None
    contact: Optional[dict[str, Any]] = None
    features: Optional[dict[str, Any]] = None
    payments: Optional[dict[str, Any]] = None
    email: Optional[dict[str, Any]] = None
    localization: Optional[dict[str, Any]] = None
    is_active: bool = Field(default=True, alias="isActive")

    model_config = {"populate_by_name": True}


class TenantUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    domain: Optional[str] = Field(default=None, max_length=255)
    domains: Optional[list[str]] = None
    branding: Optional[dict[str, Any]] = None
    seo: Optional[dict[str, Any]] = None
    contact: Optional[dict[str, Any]] = None
    features: Optional[dict[str, Any]] = None
    payments: Optional[dict[str, Any]] = None
    email: Optional[dict[str, Any]] = None
    localization: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    model_config = {"populate_by_name": True}


def tenant_to_dict(tenant: Tenant) -> dict:
    data = tenant_public_config(tenant)
    data.update(
        id=tenant.id,
        domains=tenant.domains or [],
        createdAt=_iso(tenant.created_at),
        previewUrl=generate_preview_url(tenant.tenant_id),
    )
    return data


async def _tenant_row(session: AsyncSession, tenant_id: str) -> Optional[Tenant]:
    result = await session.execute(select(Tenant).where(Tenant.tenant_id == tenant_id))
    return result.scalar_one_or_none()


@router.get("/tenants")
async def list_tenants(
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TENANTS)),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(select(Tenant).order_by(Tenant.is_default.desc(), Tenant.name))
    tenants = result.scalars().all()
    return success_response([tenant_to_dict(t) for t in tenants], meta={"count": len(tenants)})


@router.post("/tenants", status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: TenantCreateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TENANTS)),
    session: AsyncSession = Depends(get_session),
):
    if body.tenant_id in RESERVED_TENANT_IDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"'{body.tenant_id}' is a reserved tenant id",
        )
    if await _tenant_row(session, body.tenant_id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Tenant already exists")

    config = default_tenant_config(body.tenant_id, body.name)
    domain = body.domain or config["domain"]
    tenant = Tenant(
        tenant_id=body.tenant_id,
        name=body.name,
        slug=body.tenant_id,
        domain=domain,
        domains=body.domains or ([domain, f"www.{domain}"] if body.domain else config["domains"]),
        is_default=False,
        is_active=body.is_active,
    )
    for key, column in CONFIG_SECTIONS.items():
        setattr(tenant, column, {**config[key], **(getattr(body, key) or {})})

    session.add(tenant)
    await session.flush()
    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_TENANT_CREATED,
        tenant_id=tenant.tenant_id,
        target_type="tenant",
        target_id=tenant.tenant_id,
        metadata={"domain": tenant.domain},
    )
    await session.commit()
    clear_tenant_cache(tenant.tenant_id)
    return success_response(tenant_to_dict(tenant))


@router.put("/tenants/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    body: TenantUpdateRequest,
    admin: RequestContext = Depends(require_admin(PERM_MANAGE_TENANTS)),
    session: AsyncSession = Depends(get_session),
):
    tenant = await _tenant_row(session, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

    changes = body.model_dump(exclude_unset=True)
    if changes.get("is_active") is False and tenant.is_default:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The default tenant cannot be deactivated")

    for key, value in changes.items():
        if key in CONFIG_SECTIONS:
            column = CONFIG_SECTIONS[key]
            # Sections merge so partial edits keep untouched keys
            setattr(tenant, column, {**(getattr(tenant, column) or {}), **(value or {})})
        else:
            setattr(tenant, key, value)

    await log_audit(
        session,
        actor_user_id=admin.user_id,
        action=AUDIT_TENANT_UPDATED,
        tenant_id=tenant.tenant_id,
        target_type="tenant",
        target_id=tenant.tenant_id,
        metadata={"fields": sorted(changes)},
    )
    await session.commit()
    clear_tenant_cache(tenant.tenant_id)
    return success_response(tenant_to_dict(tenant))


# ────────────────────────────────────────────────────────────────
# Dashboard
# ────────────────────────────────────────────────────────────────

REVENUE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


def empty_dashboard_stats() -> dict:
    return {
        "totalBookings": 0,
        "bookingsToday": 0,
        "upcomingBookings": 0,
        "totalRevenue": 0.0,
        "bookingsByStatus": {s.value: 0 for s in BookingStatus},
        "totalTours": 0,
        "activeOffers": 0,
        "recentBookings": [],
    }


async def compute_dashboard_stats(session: AsyncSession, tenant_id: Optional[str], now: Optional[datetime] = None) -> dict:
    """Headline numbers for one tenant (or all when ``tenant_id`` is None)."""
    now = now or datetime.now(timezone.utc)
    day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    scoped = [Booking.tenant_id == tenant_id] if tenant_id else []

    async def count(*criteria) -> int:
        return await session.scalar(select(func.count()).select_from(Booking).where(*scoped, *criteria)) or 0

    stats = empty_dashboard_stats()
    stats["totalBookings"] = await count()
    stats["bookingsToday"] = await count(Booking.created_at >= day_start)
    stats["upcomingBookings"] = await count(Booking.date >= now.date(), Booking.status.not_in(TERMINAL_DB_VALUES))

    revenue_values = []
    for code in REVENUE_STATUSES:
        revenue_values += status_filter_values(code.value)
    stats["totalRevenue"] = round(
        float(
            await session.scalar(
                select(func.coalesce(func.sum(Booking.total_price), 0.0)).where(
                    *scoped, Booking.status.in_(revenue_values)
                )
            )
            or 0.0
        ),
        2,
    )

    rows = await session.execute(select(Booking.status, func.count()).where(*scoped).group_by(Booking.status))
    for raw_status, n in rows.all():
        code = to_booking_status_code(raw_status)
        if code is not None:
            stats["bookingsByStatus"][code.value] += n

    tour_scope = [Tour.tenant_id == tenant_id] if tenant_id else []
    stats["totalTours"] = await session.scalar(select(func.count()).select_from(Tour).where(*tour_scope)) or 0

    offer_scope = [SpecialOffer.tenant_id == tenant_id] if tenant_id else []
    stats["activeOffers"] = await session.scalar(
        select(func.count())
        .select_from(SpecialOffer)
        .where(
            *offer_scope,
            SpecialOffer.is_active.is_(True),
            SpecialOffer.start_date <= now,
            SpecialOffer.end_date >= now,
        )
    ) or 0

    recent = await session.execute(select(Booking).where(*scoped).order_by(Booking.created_at.desc()).limit(5))
    stats["recentBookings"] = [b.to_dict() for b in recent.scalars().all()]
    return stats


@router.get("/dashboard")
async def dashboard(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    admin: RequestContext = Depends(require_admin(PERM_VIEW_DASHBOARD)),
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    scope = scope_for_admin(tenant_id, tenant, admin)
    timeout = settings.dashboard_query_timeout_seconds
    try:
        stats = await asyncio.wait_for(compute_dashboard_stats(session, scope), timeout=timeout)
        timed_out = False
    except asyncio.TimeoutError:
        logger.warning(f"[DASHBOARD] Stats for {scope or ALL_TENANTS} timed out after {timeout}s; serving zeros")
        stats = empty_dashboard_stats()
        timed_out = True

    return success_response(stats, timedOut=timed_out, meta={"tenantId": scope or ALL_TENANTS})
