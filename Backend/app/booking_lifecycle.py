"""
Booking Lifecycle

Create, cancel, refund and re-status bookings.

Every state change is one conditional UPDATE on the booking row (the WHERE
clause carries the allowed source statuses), so when two callers race the
first one wins and the second gets a 400. Seat counts and offer/coupon
usage go through the atomic helpers in availability.py and offers.py.

Cancellation refund policy (days until the tour, rounded up):
    >= 7 days  100%
    >= 3 days   50%
    otherwise    0%

Nothing here commits; routes own the transaction and send emails after
the commit.
"""

import logging
import math
import random
import string
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import (
    get_availability_record,
    get_day_status,
    get_slots,
    release_seats,
    reserve_seats,
)
from .booking_status import (
    BOOKING_STATUS_LABEL,
    BookingStatus,
    TERMINAL_STATUSES,
    is_terminal,
    to_booking_status_code,
)
from .core.request_context import RequestContext
from .models import Booking, Tour
from .offers import (
    PromoCodeError,
    applicable_offers,
    get_best_offer,
    redeem_code,
    redeem_offer,
    round_money,
    verify_promo_code,
)
from .tenancy import get_public_tour

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "EEO"
SECONDS_PER_DAY = 24 * 60 * 60
ADMIN_CANCEL_REASON = "Cancelled by administrator"
CUSTOMER_CANCEL_REASON = "Cancelled by customer"


class BookingError(Exception):
    """A booking request that can't be honoured. ``message`` is user-facing."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _both_spellings(statuses) -> list[str]:
    values = []
    for code in statuses:
        values.extend([BOOKING_STATUS_LABEL[code], code.value])
    return values


TERMINAL_DB_VALUES = _both_spellings(TERMINAL_STATUSES)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class BookingCreateRequest(BaseModel):
    tour_id: int = Field(..., alias="tourId")
    date: date
    time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    guests: int = Field(default=1, ge=1, le=100)
    option_id: Optional[str] = Field(default=None, alias="optionId")
    customer_name: Optional[str] = Field(default=None, alias="customerName", max_length=255)
    customer_email: Optional[str] = Field(default=None, alias="customerEmail", max_length=255)
    promo_code: Optional[str] = Field(default=None, alias="promoCode", max_length=64)

    model_config = {"populate_by_name": True}

    @field_validator("promo_code")
    @classmethod
    def blank_code_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v else None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class StatusUpdateRequest(BaseModel):
    status: str


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=1000)


# ============================================================================
# PURE HELPERS
# ============================================================================

def days_until_tour(tour_date: date, now: Optional[datetime] = None) -> int:
    """Days from ``now`` to the start (00:00 UTC) of the tour day, rounded up."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = datetime.combine(tour_date, time.min, tzinfo=timezone.utc)
    return math.ceil((start - now).total_seconds() / SECONDS_PER_DAY)


def refund_percentage(days: int) -> int:
    if days >= 7:
        return 100
    if days >= 3:
        return 50
    return 0


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    """``EEO-<last 8 digits of the ms timestamp>-<6 random A-Z0-9>``"""
    now = now or datetime.now(timezone.utc)
    stamp = str(int(now.timestamp() * 1000))[-8:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{REFERENCE_PREFIX}-{stamp}-{suffix}"


def assert_booking_owner(
    booking: Booking, ctx: RequestContext, message: str = "You can only cancel your own bookings"
) -> None:
    if not booking.user_id or booking.user_id != ctx.user_id:
        logger.warning(f"User {ctx.user_id} tried to act on booking {booking.id} owned by {booking.user_id}")
        raise BookingError(message, status_code=403)


# ============================================================================
# LOOKUPS
# ============================================================================

def _parse_booking_id(booking_id: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(booking_id))
    except ValueError:
        return None


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    """Raises BookingError 404 for unknown or malformed ids."""
    parsed = _parse_booking_id(booking_id)
    booking = await session.get(Booking, parsed) if parsed else None
    if booking is None:
        raise BookingError("Booking not found", status_code=404)
    return booking


async def get_booking_tour(session: AsyncSession, booking: Booking) -> Optional[Tour]:
    return await session.get(Tour, booking.tour_id)


async def get_booking_by_reference(session: AsyncSession, tenant_id: str, reference: str) -> Booking:
    """
    Look a booking up by its customer-facing reference within one tenant.

    Raises:
        BookingError 400: blank reference
        BookingError 404: unknown reference, or one issued by another tenant
    """
    reference = (reference or "").strip().upper()
    if not reference:
        raise BookingError("Booking reference is required")
    result = await session.execute(
        select(Booking).where(Booking.booking_reference == reference, Booking.tenant_id == tenant_id)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingError("Booking not found", status_code=404)
    return booking


# ============================================================================
# STATE CHANGES
# ============================================================================

@dataclass
class CancellationResult:
    refund_amount: float
    refund_percentage: int
    days_until_tour: int
    reason: str

    def to_dict(self) -> dict:
        return {
            "refundAmount": self.refund_amount,
            "refundPercentage": self.refund_percentage,
            "daysUntilTour": self.days_until_tour,
        }


async def cancel_booking(
    session: AsyncSession,
    booking: Booking,
    *,
    cancelled_by: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CancellationResult:
    """
    Cancel a booking and compute its refund.

    Raises:
        BookingError 400: already cancelled (or refunded) by an earlier call
    """
    now = now or datetime.now(timezone.utc)
    if not reason:
        reason = ADMIN_CANCEL_REASON if cancelled_by == "admin" else CUSTOMER_CANCEL_REASON

    days = days_until_tour(booking.date, now)
    percentage = refund_percentage(days)
    amount = round_money(booking.total_price * percentage / 100)

    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.not_in(TERMINAL_DB_VALUES))
        .values(
            status=BOOKING_STATUS_LABEL[BookingStatus.CANCELLED],
            refund_amount=amount,
            refund_percentage=percentage,
            cancellation_reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.refresh(booking)
        if to_booking_status_code(booking.status) == BookingStatus.CANCELLED:
            raise BookingError("Booking is already cancelled")
        raise BookingError(f"Booking cannot be cancelled (status: {booking.status})")

    if booking.availability_slot_id:
        await release_seats(session, booking.availability_slot_id, booking.guests)
    await session.refresh(booking)

    logger.info(
        f"Booking {booking.booking_reference} cancelled by {cancelled_by}: "
        f"{days} days out, refund {percentage}% (${amount:.2f})"
    )
    return CancellationResult(amount, percentage, days, reason)


async def update_booking_status(session: AsyncSession, booking: Booking, status_value: str) -> str:
    """
    Move a booking to ``status_value`` (code or label); returns the previous label.

    Raises:
        BookingError 400: unknown status, or the booking changed underneath us
    """
    code = to_booking_status_code(status_value)
    if code is None:
        raise BookingError(f"Invalid booking status: {status_value}")

    previous = booking.status
    new_label = BOOKING_STATUS_LABEL[code]
    if previous == new_label:
        return previous
    if is_terminal(previous) and code not in TERMINAL_STATUSES:
        raise BookingError(f"Booking is {previous} and cannot move back to {new_label}")

    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == previous)
        .values(status=new_label, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BookingError("Booking was modified by another request; reload and try again", status_code=409)

    if booking.availability_slot_id and code in TERMINAL_STATUSES and not is_terminal(previous):
        await release_seats(session, booking.availability_slot_id, booking.guests)
    await session.refresh(booking)

    logger.info(f"Booking {booking.booking_reference} status {previous} -> {new_label}")
    return previous


async def refund_booking(
    session: AsyncSession,
    booking: Booking,
    *,
    amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> Booking:
    """
    Record a refund. No amount (or the full price) means a full refund.

    Raises:
        BookingError 400: already fully refunded, or amount above the price
    """
    if amount is not None and amount > booking.total_price:
        raise BookingError("Refund amount cannot exceed the booking total")

    full = amount is None or amount >= booking.total_price
    refund_amount = round_money(booking.total_price if full else amount)
    code = BookingStatus.REFUNDED if full else BookingStatus.PARTIAL_REFUNDED
    percentage = round(refund_amount / booking.total_price * 100) if booking.total_price else 100
    previous = booking.status

    values = {
        "status": BOOKING_STATUS_LABEL[code],
        "payment_status": "refunded" if full else "partially_refunded",
        "refund_amount": refund_amount,
        "refund_percentage": percentage,
        "updated_at": datetime.now(timezone.utc),
    }
    if reason:
        values["cancellation_reason"] = reason

    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.not_in(_both_spellings([BookingStatus.REFUNDED])))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BookingError("Booking is already refunded")

    if booking.availability_slot_id and not is_terminal(previous):
        await release_seats(session, booking.availability_slot_id, booking.guests)
    await session.refresh(booking)

    logger.info(f"Booking {booking.booking_reference} refunded ${refund_amount:.2f} ({code.value})")
    return booking


# ============================================================================
# CREATION
# ============================================================================

def _option_price(tour: Tour, option_id: Optional[str]) -> Optional[float]:
    for opt in tour.booking_options or []:
        if str(opt.get("id")) == option_id and opt.get("price"):
            return float(opt["price"])
    return None


def _option_type(tour: Tour, option_id: Optional[str]) -> Optional[str]:
    for opt in tour.booking_options or []:
        if str(opt.get("id")) == option_id:
            return opt.get("type") or opt.get("label")
    return None


async def create_booking(
    session: AsyncSession,
    tenant_id: str,
    request: BookingCreateRequest,
    ctx: RequestContext,
    now: Optional[datetime] = None,
) -> tuple[Booking, Tour]:
    """
    Validate, price and insert a booking.

    Order matters: everything that can fail without side effects (tour, date,
    stop-sale, promo code) is checked before seats are taken or usage is
    redeemed.

    Raises:
        BookingError 400/404/409
    """
    now = now or datetime.now(timezone.utc)

    tour = await get_public_tour(session, tenant_id, request.tour_id)
    if tour is None:
        raise BookingError("Tour not found", status_code=404)

    option_ids = tour.option_ids
    if request.option_id and option_ids and request.option_id not in option_ids:
        raise BookingError("Unknown booking option for this tour")
    if request.date < now.date():
        raise BookingError("Cannot book a date in the past")

    day = await get_day_status(session, tenant_id, tour.id, request.date, request.option_id, option_ids)
    if day.is_blocked:
        raise BookingError("This tour is not available on the selected date", status_code=409)

    slot = None
    if request.time:
        record = await get_availability_record(session, tour.id, request.date)
        if record is not None:
            slot = next((s for s in await get_slots(session, record.id) if s.time == request.time), None)
            if slot is None:
                raise BookingError("Selected time is not available")

    unit_price = (slot.price if slot and slot.price else None) or _option_price(tour, request.option_id) or tour.effective_price
    subtotal = round_money(unit_price * request.guests)

    verified = None
    if request.promo_code:
        try:
            verified = await verify_promo_code(
                session, tenant_id, request.promo_code, now=now, tour_id=tour.id, price=subtotal
            )
        except PromoCodeError as e:
            raise BookingError(e.message, status_code=e.status_code) from e

    if slot is not None and not await reserve_seats(session, slot.id, request.guests):
        raise BookingError("Not enough seats left for the selected time", status_code=409)

    discount = 0.0
    applied_offer = None
    discount_code = None
    if verified is not None:
        if await redeem_code(session, verified):
            discount = verified.discount_for(subtotal)
            discount_code = verified.code
            applied_offer = {"source": verified.source, "id": verified.record_id, "code": verified.code}
        else:
            logger.info(f"Code {verified.code} ran out of uses before booking; charging full price")
    else:
        offers = await applicable_offers(
            session, tour, request.date, _option_type(tour, request.option_id), now
        )
        best = get_best_offer(offers, subtotal, request.date, request.guests, now=now)
        if best is not None and await redeem_offer(session, best.offer.id):
            discount = best.discount_amount
            applied_offer = {
                "source": "offer",
                "id": best.offer.id,
                "name": best.offer.name,
                "type": best.offer.type,
                "discountAmount": discount,
            }
        elif best is not None:
            logger.info(f"Offer {best.offer.id} ran out of uses before booking; charging full price")

    booking = Booking(
        tenant_id=tenant_id,
        booking_reference=generate_booking_reference(now),
        tour_id=tour.id,
        option_id=request.option_id,
        user_id=ctx.user_id if ctx.is_authenticated else None,
        customer_name=request.customer_name,
        customer_email=request.customer_email or ctx.email,
        date=request.date,
        time=request.time,
        guests=request.guests,
        total_price=round_money(subtotal - discount),
        status=BOOKING_STATUS_LABEL[BookingStatus.PENDING],
        applied_offer=applied_offer,
        discount_code=discount_code,
        availability_slot_id=slot.id if slot else None,
        created_at=now,
        updated_at=now,
    )
    session.add(booking)
    await session.flush()

    logger.info(
        f"Created booking {booking.booking_reference} for tour {tour.id} "
        f"(tenant={tenant_id}, guests={request.guests}, total=${booking.total_price:.2f})"
    )
    return booking, tour


async def list_user_bookings(session: AsyncSession, tenant_id: str, user_id: str) -> list[Booking]:
    result = await session.execute(
        select(Booking)
        .where(Booking.tenant_id == tenant_id, Booking.user_id == user_id)
        .order_by(Booking.created_at.desc())
    )
    return list(result.scalars().all())
