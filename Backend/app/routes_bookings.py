"""
Customer booking routes.

    POST /api/bookings               create (guest or signed-in)
    GET  /api/bookings/mine          the caller's bookings in this tenant
    GET  /api/bookings/verify/{ref}  confirmation lookup by booking reference
    GET  /api/bookings/{id}          one booking, owner only
    POST /api/bookings/{id}/cancel   owner-only cancellation with refund policy

Emails go out after the commit and never fail the request.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import AUDIT_BOOKING_CANCELLED, AUDIT_BOOKING_CREATED, log_audit
from .booking_lifecycle import (
    BookingCreateRequest,
    CancelRequest,
    assert_booking_owner,
    cancel_booking,
    create_booking,
    get_booking,
    get_booking_by_reference,
    get_booking_tour,
    list_user_bookings,
)
from .core.db import get_session
from .core.request_context import RequestContext, get_optional_request_context, get_request_context
from .core.responses import success_response
from .models import Tour
from .notifications import send_admin_booking_alert, send_booking_confirmation, send_cancellation_confirmation
from .tenancy import TenantContext, get_tenant_config, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create(
    body: BookingCreateRequest,
    tenant: TenantContext = Depends(get_tenant_context),
    ctx: RequestContext = Depends(get_optional_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking, tour = await create_booking(session, tenant.tenant_id, body, ctx)
    await log_audit(
        session,
        actor_user_id=ctx.user_id or "guest",
        action=AUDIT_BOOKING_CREATED,
        tenant_id=booking.tenant_id,
        target_type="booking",
        target_id=str(booking.id),
        metadata={"tourId": tour.id, "guests": booking.guests, "appliedOffer": booking.applied_offer},
    )
    await session.commit()

    tenant_config = (await get_tenant_config(session, booking.tenant_id)).config
    await send_booking_confirmation(booking, tour, tenant_config)
    await send_admin_booking_alert(booking, tour, tenant_config)

    return success_response(booking.to_dict())


@router.get("/mine")
async def my_bookings(
    tenant: TenantContext = Depends(get_tenant_context),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    bookings = await list_user_bookings(session, tenant.tenant_id, ctx.user_id)
    return success_response([b.to_dict() for b in bookings], meta={"count": len(bookings)})


def tour_summary(tour: Optional[Tour]) -> Optional[dict]:
    if tour is None:
        return None
    return {
        "id": tour.id,
        "title": tour.title,
        "slug": tour.slug,
        "image": tour.image,
        "duration": tour.duration,
    }


@router.get("/verify/{reference}")
async def verify_reference(
    reference: str,
    tenant: TenantContext = Depends(get_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    """Confirmation-page lookup by reference; no account needed, so no email or ids."""
    booking = await get_booking_by_reference(session, tenant.tenant_id, reference)
    tour = await get_booking_tour(session, booking)
    return success_response(
        {
            "bookingReference": booking.booking_reference,
            "tour": tour_summary(tour),
            "customerName": booking.customer_name,
            "date": booking.date.isoformat(),
            "time": booking.time,
            "guests": booking.guests,
            "optionId": booking.option_id,
            "totalPrice": booking.total_price,
            "status": booking.status,
            "createdAt": booking.created_at.isoformat() if booking.created_at else None,
        }
    )


@router.get("/{booking_id}")
async def get_one(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await get_booking(session, booking_id)
    assert_booking_owner(booking, ctx, "Not authorized to view this booking")
    data = booking.to_dict()
    data["tour"] = tour_summary(await get_booking_tour(session, booking))
    return success_response(data)


@router.post("/{booking_id}/cancel")
async def cancel(
    booking_id: str,
    body: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await get_booking(session, booking_id)
    assert_booking_owner(booking, ctx)

    result = await cancel_booking(session, booking, cancelled_by="customer", reason=body.reason if body else None)
    await log_audit(
        session,
        actor_user_id=ctx.user_id,
        action=AUDIT_BOOKING_CANCELLED,
        tenant_id=booking.tenant_id,
        target_type="booking",
        target_id=str(booking.id),
        metadata=result.to_dict(),
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
    )
