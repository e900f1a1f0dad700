"""
Offer / Discount Evaluator

Two layers:

PURE FUNCTIONS (no I/O, easily testable)
    is_offer_active, is_offer_applicable_to_tour,
    is_offer_applicable_by_travel_date, calculate_discounted_price,
    get_best_offer, plus display helpers (text, badge colour, time left).

DATABASE FUNCTIONS
    list_active_offers, evaluate_tour_offers, batch_offer_badges,
    verify_promo_code, redeem_offer / redeem_discount.

Offer types:
    percentage   X% off
    fixed        flat amount off
    bundle       X% off a package
    early_bird   X% off when travel is at least min_days_in_advance (7) away
    last_minute  X% off when travel is within max_days_before_tour (2) days
    group        X% off for group_size >= min_group_size (2)
    promo_code   X% off, only after the customer enters the code

Best offer:
    promo_code offers are never auto-selected. Among qualifying offers the
    highest priority wins; equal priorities fall back to the larger discount.

Pricing:
    discount capped at max_discount, then at the price itself (never below
    zero); money rounded half-up to cents, percentage to a whole number.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Discount, SpecialOffer, Tour
from .tenancy.config import DEFAULT_TENANT_ID

logger = logging.getLogger(__name__)

OFFER_TYPES = ("percentage", "fixed", "bundle", "early_bird", "last_minute", "group", "promo_code")
PROMO_CODE = "promo_code"

DEFAULT_MIN_DAYS_IN_ADVANCE = 7
DEFAULT_MAX_DAYS_BEFORE_TOUR = 2
DEFAULT_MIN_GROUP_SIZE = 2
URGENCY_DAYS = 7

SECONDS_PER_DAY = 24 * 60 * 60


# ────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────

def as_utc(value: Any) -> Optional[datetime]:
    """Coerce a date / naive datetime / aware datetime to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _round_whole(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def days_between(first: Any, second: Any) -> int:
    """Whole days between two instants, order-independent."""
    delta = (as_utc(first) - as_utc(second)).total_seconds()
    return _round_whole(abs(delta) / SECONDS_PER_DAY)


def days_until(travel: Any, now: Any) -> int:
    """Signed whole days from ``now`` to ``travel`` (negative when in the past)."""
    delta = (as_utc(travel) - as_utc(now)).total_seconds() / SECONDS_PER_DAY
    return _round_whole(delta) if delta >= 0 else -_round_whole(-delta)


def _ids(values: Optional[Sequence[Any]]) -> set[str]:
    return {str(v) for v in (values or [])}


def usage_available(used_count: Optional[int], usage_limit: Optional[int]) -> bool:
    """A missing (or zero) usage limit means unlimited."""
    if not usage_limit:
        return True
    return (used_count or 0) < usage_limit


# ────────────────────────────────────────────────────────────────
# Pure Rules
# ────────────────────────────────────────────────────────────────

def is_offer_active(offer: SpecialOffer, now: Optional[datetime] = None) -> bool:
    """
    True iff the offer is switched on, ``start_date <= now <= end_date`` and its
    usage budget is not exhausted.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    if not offer.is_active:
        return False
    if now < as_utc(offer.start_date) or now > as_utc(offer.end_date):
        return False
    return usage_available(offer.used_count, offer.usage_limit)


def is_offer_applicable_to_tour(
    offer: SpecialOffer,
    tour_id: Any,
    option_type: Optional[str] = None,
) -> bool:
    """
    Exclusion list wins; an empty applicable list means every tour; listed tours
    may be narrowed to specific booking options via tour_option_selections.
    """
    tour_key = str(tour_id)
    if tour_key in _ids(offer.excluded_tours):
        return False

    applicable = _ids(offer.applicable_tours)
    if not applicable:
        return True
    if tour_key not in applicable:
        return False

    if option_type and offer.tour_option_selections:
        selection = next(
            (s for s in offer.tour_option_selections if str(s.get("tourId")) == tour_key),
            None,
        )
        if selection:
            if selection.get("allOptions"):
                return True
            selected = selection.get("selectedOptions") or []
            if selected:
                return option_type in selected
    return True


def is_offer_applicable_by_travel_date(offer: SpecialOffer, travel_date: Any = None) -> bool:
    """Travel window and blackout dates. No travel date means no restriction."""
    if travel_date is None:
        return True
    travel = as_utc(travel_date)

    if offer.travel_start_date and travel < as_utc(offer.travel_start_date):
        return False
    if offer.travel_end_date and travel > as_utc(offer.travel_end_date):
        return False
    if offer.blackout_dates and travel.date().isoformat() in {str(d)[:10] for d in offer.blackout_dates}:
        return False
    return True


@dataclass
class DiscountResult:
    """Outcome of pricing one offer against one price."""

    original_price: float
    discounted_price: float
    discount_amount: float = 0.0
    discount_percentage: int = 0
    offer: Optional[SpecialOffer] = None
    is_applicable: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "originalPrice": self.original_price,
            "discountedPrice": self.discounted_price,
            "discountAmount": self.discount_amount,
            "discountPercentage": self.discount_percentage,
            "isApplicable": self.is_applicable,
            "reason": self.reason,
            "offer": offer_summary(self.offer) if self.offer is not None else None,
        }


def _percent_of(price: float, percent: float) -> float:
    return price * (percent / 100)


def calculate_discounted_price(
    original_price: float,
    offer: SpecialOffer,
    travel_date: Any = None,
    group_size: int = 1,
    booking_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DiscountResult:
    """
    Price ``original_price`` under ``offer``.

    ``booking_date`` is the moment the booking is made (early bird / last
    minute windows); ``now`` is the moment the offer's validity is checked.
    Both default to the current time.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    booking_date = as_utc(booking_date) or now
    result = DiscountResult(
        original_price=original_price,
        discounted_price=original_price,
        offer=offer,
    )

    if not is_offer_active(offer, now):
        result.reason = "Offer is not currently active"
        return result
    if not is_offer_applicable_by_travel_date(offer, travel_date):
        result.reason = "Offer not valid for selected travel date"
        return result
    if offer.min_booking_value and original_price < offer.min_booking_value:
        result.reason = f"Minimum booking value of ${offer.min_booking_value:g} required"
        return result

    value = offer.discount_value or 0
    offer_type = offer.type

    if offer_type in ("percentage", "bundle"):
        amount = _percent_of(original_price, value)
    elif offer_type == "fixed":
        amount = value
    elif offer_type == "early_bird":
        if travel_date is None:
            result.reason = "Travel date required for early bird discount"
            return result
        min_days = offer.min_days_in_advance or DEFAULT_MIN_DAYS_IN_ADVANCE
        if days_until(travel_date, booking_date) < min_days:
            result.reason = f"Book at least {min_days} days in advance to qualify"
            return result
        amount = _percent_of(original_price, value)
    elif offer_type == "last_minute":
        if travel_date is None:
            result.reason = "Travel date required for last minute discount"
            return result
        max_days = offer.max_days_before_tour or DEFAULT_MAX_DAYS_BEFORE_TOUR
        remaining = days_until(travel_date, booking_date)
        if not 0 <= remaining <= max_days:
            result.reason = f"Only valid when booking within {max_days} days of tour"
            return result
        amount = _percent_of(original_price, value)
    elif offer_type == "group":
        min_size = offer.min_group_size or DEFAULT_MIN_GROUP_SIZE
        if group_size < min_size:
            result.reason = f"Minimum group size of {min_size} required"
            return result
        amount = _percent_of(original_price, value)
    elif offer_type == PROMO_CODE:
        amount = _percent_of(original_price, value)
        result.reason = "Enter promo code at checkout"
    else:
        result.reason = "Unknown offer type"
        return result

    if offer.max_discount and amount > offer.max_discount:
        amount = offer.max_discount
    amount = min(max(amount, 0.0), original_price)

    result.is_applicable = True
    result.discount_amount = round_money(amount)
    result.discounted_price = round_money(original_price - amount)
    result.discount_percentage = _round_whole(amount / original_price * 100) if original_price > 0 else 0
    return result


def get_best_offer(
    offers: Sequence[SpecialOffer],
    original_price: float,
    travel_date: Any = None,
    group_size: int = 1,
    booking_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[DiscountResult]:
    """
    Pick the auto-applied offer: highest priority first, then largest discount.

    Returns None when nothing qualifies. promo_code offers are skipped.
    """
    best: Optional[DiscountResult] = None
    for offer in offers:
        if offer.type == PROMO_CODE:
            continue
        result = calculate_discounted_price(
            original_price, offer, travel_date, group_size, booking_date=booking_date, now=now
        )
        if not result.is_applicable:
            continue
        if best is None:
            best = result
            continue
        rank = (offer.priority or 0, result.discount_amount)
        best_rank = (best.offer.priority or 0, best.discount_amount)
        if rank > best_rank:
            best = result
    return best


# ────────────────────────────────────────────────────────────────
# Display Helpers
# ────────────────────────────────────────────────────────────────

BADGE_COLORS: dict[str, dict[str, str]] = {
    "percentage": {"bg": "bg-rose-500", "text": "text-white"},
    "fixed": {"bg": "bg-amber-500", "text": "text-white"},
    "early_bird": {"bg": "bg-emerald-500", "text": "text-white"},
    "last_minute": {"bg": "bg-red-600", "text": "text-white"},
    "group": {"bg": "bg-blue-500", "text": "text-white"},
    "bundle": {"bg": "bg-purple-500", "text": "text-white"},
    "promo_code": {"bg": "bg-slate-700", "text": "text-white"},
}


def get_offer_display_text(offer: SpecialOffer) -> str:
    value = f"{offer.discount_value:g}"
    if offer.type == "percentage":
        return f"{value}% OFF"
    if offer.type == "fixed":
        return f"${value} OFF"
    if offer.type in ("early_bird", "last_minute", "group", "bundle"):
        label = offer.type.replace("_", " ").upper()
        return f"{label} {value}% OFF"
    if offer.type == PROMO_CODE:
        return "USE CODE"
    return "SPECIAL OFFER"


def get_offer_badge_color(offer_type: str) -> dict[str, str]:
    return dict(BADGE_COLORS.get(offer_type, BADGE_COLORS["fixed"]))


def format_offer_time_remaining(end_date: Any, now: Optional[datetime] = None) -> str:
    now = as_utc(now or datetime.now(timezone.utc))
    diff = (as_utc(end_date) - now).total_seconds()
    if diff <= 0:
        return "Expired"

    days = math.floor(diff / SECONDS_PER_DAY)
    hours = math.floor((diff % SECONDS_PER_DAY) / 3600)
    if days > 30:
        return f"{days // 30} months left"
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} left"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} left"
    return "Ends soon"


def should_show_urgency(end_date: Any, now: Optional[datetime] = None) -> bool:
    now = as_utc(now or datetime.now(timezone.utc))
    diff = (as_utc(end_date) - now).total_seconds()
    return diff > 0 and math.floor(diff / SECONDS_PER_DAY) <= URGENCY_DAYS


def offer_summary(offer: SpecialOffer) -> dict:
    return {
        "id": offer.id,
        "name": offer.name,
        "type": offer.type,
        "code": offer.code,
        "discountValue": offer.discount_value,
        "priority": offer.priority or 0,
        "isFeatured": bool(offer.is_featured),
        "featuredBadgeText": offer.featured_badge_text,
        "endDate": as_utc(offer.end_date).isoformat() if offer.end_date else None,
    }


def offer_badge(offer: SpecialOffer, now: Optional[datetime] = None) -> dict:
    badge = offer_summary(offer)
    badge.update(
        displayText=get_offer_display_text(offer),
        badgeColor=get_offer_badge_color(offer.type),
        timeRemaining=format_offer_time_remaining(offer.end_date, now),
        showUrgency=should_show_urgency(offer.end_date, now),
    )
    return badge


# ────────────────────────────────────────────────────────────────
# Database Functions
# ────────────────────────────────────────────────────────────────

def _usage_clause(used_col, limit_col):
    return or_(limit_col.is_(None), limit_col <= 0, used_col < limit_col)


async def list_active_offers(
    session: AsyncSession,
    tenant_id: str,
    now: Optional[datetime] = None,
    include_promo_codes: bool = True,
) -> Sequence[SpecialOffer]:
    """Active offers for a tenant, sorted by priority then discount value (both desc)."""
    now = as_utc(now or datetime.now(timezone.utc))
    stmt = (
        select(SpecialOffer)
        .where(
            SpecialOffer.tenant_id == tenant_id,
            SpecialOffer.is_active.is_(True),
            SpecialOffer.start_date <= now,
            SpecialOffer.end_date >= now,
            _usage_clause(SpecialOffer.used_count, SpecialOffer.usage_limit),
        )
        .order_by(SpecialOffer.priority.desc(), SpecialOffer.discount_value.desc(), SpecialOffer.id)
    )
    if not include_promo_codes:
        stmt = stmt.where(SpecialOffer.type != PROMO_CODE)
    result = await session.execute(stmt)
    return result.scalars().all()


@dataclass
class TourOffers:
    tour_id: int
    original_price: float
    offers: list[dict] = field(default_factory=list)
    best_offer: Optional[DiscountResult] = None

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        best = None
        if self.best_offer is not None:
            best = self.best_offer.to_dict()
            best.update(
                displayText=get_offer_display_text(self.best_offer.offer),
                timeRemaining=format_offer_time_remaining(self.best_offer.offer.end_date, now),
                showUrgency=should_show_urgency(self.best_offer.offer.end_date, now),
            )
        return {
            "tourId": self.tour_id,
            "originalPrice": self.original_price,
            "offers": self.offers,
            "bestOffer": best,
            "hasOffers": bool(self.offers),
            "offerCount": len(self.offers),
        }


async def applicable_offers(
    session: AsyncSession,
    tour: Tour,
    travel_date: Any = None,
    option_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[SpecialOffer]:
    """
    Active offers of the tour's owning tenant that cover this tour and date.

    Inherited default-catalog tours therefore carry the default tenant's
    promotions. Shared (tenant-less) tours use the default tenant's offers.
    """
    offers = await list_active_offers(session, tour.tenant_id or DEFAULT_TENANT_ID, now)
    return [
        offer
        for offer in offers
        if is_offer_applicable_to_tour(offer, tour.id, option_type)
        and is_offer_applicable_by_travel_date(offer, travel_date)
    ]


async def evaluate_tour_offers(
    session: AsyncSession,
    tour: Tour,
    travel_date: Any = None,
    group_size: int = 1,
    option_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TourOffers:
    """Every offer that applies to ``tour`` plus the auto-applied best one."""
    now = as_utc(now or datetime.now(timezone.utc))
    original_price = tour.effective_price or 0.0
    applicable = await applicable_offers(session, tour, travel_date, option_type, now)

    listing: list[dict] = []
    for offer in applicable:
        priced = calculate_discounted_price(original_price, offer, travel_date, group_size, now=now)
        entry = offer_badge(offer, now)
        entry["discountResult"] = priced.to_dict() if priced.is_applicable else None
        listing.append(entry)

    best = get_best_offer(applicable, original_price, travel_date, group_size, now=now)
    return TourOffers(tour_id=tour.id, original_price=original_price, offers=listing, best_offer=best)


async def batch_offer_badges(
    session: AsyncSession,
    tenant_id: str,
    tour_ids: Sequence[Any],
    now: Optional[datetime] = None,
) -> list[dict]:
    """
    Offer badge summary per tour for listing pages, in ``tour_ids`` order.

    The first applicable offer in priority order is the tour's badge.
    """
    now = as_utc(now or datetime.now(timezone.utc))
    offers = await list_active_offers(session, tenant_id, now, include_promo_codes=False)

    summaries = {str(tid): {"tourId": tid, "hasOffer": False, "offerCount": 0, "bestOffer": None} for tid in tour_ids}
    for offer in offers:
        for key, summary in summaries.items():
            if not is_offer_applicable_to_tour(offer, key):
                continue
            summary["offerCount"] += 1
            summary["hasOffer"] = True
            if summary["bestOffer"] is None:
                summary["bestOffer"] = offer_badge(offer, now)
    return list(summaries.values())


# ────────────────────────────────────────────────────────────────
# Promo Codes
# ────────────────────────────────────────────────────────────────

class PromoCodeError(Exception):
    """Raised when an entered code cannot be used. ``message`` is user-facing."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class VerifiedCode:
    """A code that passed verification, ready to price and redeem."""

    source: str  # "offer" | "discount"
    record_id: int
    code: str
    discount_type: str  # percentage | fixed
    value: float
    max_discount: Optional[float] = None

    def discount_for(self, price: float) -> float:
        if self.discount_type == "fixed":
            amount = self.value
        else:
            amount = _percent_of(price, self.value)
        if self.max_discount and amount > self.max_discount:
            amount = self.max_discount
        return round_money(min(max(amount, 0.0), price))

    def to_dict(self, price: Optional[float] = None) -> dict:
        data = {
            "code": self.code,
            "source": self.source,
            "discountType": self.discount_type,
            "value": self.value,
        }
        if price is not None:
            amount = self.discount_for(price)
            data.update(discountAmount=amount, discountedPrice=round_money(price - amount))
        return data


async def verify_promo_code(
    session: AsyncSession,
    tenant_id: str,
    code: Optional[str],
    now: Optional[datetime] = None,
    tour_id: Any = None,
    price: Optional[float] = None,
) -> VerifiedCode:
    """
    Check an entered code against promo_code offers, then plain coupons.

    Raises:
        PromoCodeError: 400 for a blank, inactive, expired or used-up code,
                        404 when the code does not exist for the tenant
    """
    normalized = (code or "").strip().upper()
    if not normalized:
        raise PromoCodeError("Coupon code is required")
    now = as_utc(now or datetime.now(timezone.utc))

    result = await session.execute(
        select(SpecialOffer).where(
            SpecialOffer.tenant_id == tenant_id,
            SpecialOffer.type == PROMO_CODE,
            SpecialOffer.code == normalized,
        )
    )
    offer = result.scalar_one_or_none()
    if offer is not None:
        if not offer.is_active:
            raise PromoCodeError("This coupon is no longer active")
        if now < as_utc(offer.start_date):
            raise PromoCodeError("This coupon is not active yet")
        if now > as_utc(offer.end_date):
            raise PromoCodeError("This coupon has expired")
        if not usage_available(offer.used_count, offer.usage_limit):
            raise PromoCodeError("This coupon has reached its usage limit")
        if tour_id is not None and not is_offer_applicable_to_tour(offer, tour_id):
            raise PromoCodeError("This coupon does not apply to this tour")
        if price is not None and offer.min_booking_value and price < offer.min_booking_value:
            raise PromoCodeError(f"Minimum booking value of ${offer.min_booking_value:g} required")
        return VerifiedCode(
            source="offer",
            record_id=offer.id,
            code=normalized,
            discount_type="percentage",
            value=offer.discount_value,
            max_discount=offer.max_discount,
        )

    result = await session.execute(
        select(Discount).where(Discount.tenant_id == tenant_id, Discount.code == normalized)
    )
    discount = result.scalar_one_or_none()
    if discount is None:
        raise PromoCodeError("Invalid coupon code", status_code=404)
    if not discount.is_active:
        raise PromoCodeError("This coupon is no longer active")
    if discount.expires_at and now > as_utc(discount.expires_at):
        raise PromoCodeError("This coupon has expired")
    if not usage_available(discount.times_used, discount.usage_limit):
        raise PromoCodeError("This coupon has reached its usage limit")
    return VerifiedCode(
        source="discount",
        record_id=discount.id,
        code=normalized,
        discount_type=discount.discount_type,
        value=discount.value,
    )


async def redeem_offer(session: AsyncSession, offer_id: int) -> bool:
    """
    Atomically consume one use of an offer.

    Single conditional UPDATE; False when the budget ran out first.
    """
    result = await session.execute(
        update(SpecialOffer)
        .where(SpecialOffer.id == offer_id, _usage_clause(SpecialOffer.used_count, SpecialOffer.usage_limit))
        .values(used_count=SpecialOffer.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    redeemed = result.rowcount == 1
    if not redeemed:
        logger.info(f"Offer {offer_id} usage limit reached; redemption refused")
    return redeemed


async def redeem_discount(session: AsyncSession, discount_id: int) -> bool:
    """Atomically consume one use of a coupon code."""
    result = await session.execute(
        update(Discount)
        .where(Discount.id == discount_id, _usage_clause(Discount.times_used, Discount.usage_limit))
        .values(times_used=Discount.times_used + 1)
        .execution_options(synchronize_session=False)
    )
    redeemed = result.rowcount == 1
    if not redeemed:
        logger.info(f"Discount {discount_id} usage limit reached; redemption refused")
    return redeemed


async def redeem_code(session: AsyncSession, verified: VerifiedCode) -> bool:
    if verified.source == "offer":
        return await redeem_offer(session, verified.record_id)
    return await redeem_discount(session, verified.record_id)
