"""
Booking Notifications

Customer and admin emails for booking events, branded per tenant.

Every function here is best-effort: failures are logged and reported as
False, never raised, so a failed email can't undo a booking change.
"""

import logging
from datetime import date
from html import escape
from typing import Optional

import httpx

from .core.config import get_settings
from .emailer import send_email
from .models import Booking, Tour

logger = logging.getLogger(__name__)

REFUND_PROCESSING_DAYS = 5


def email_branding(tenant_config: dict) -> dict:
    """Sender name, colours and contact details from a tenant config dict."""
    branding = tenant_config.get("branding") or {}
    contact = tenant_config.get("contact") or {}
    email_settings = tenant_config.get("email") or {}
    name = tenant_config.get("name") or "Egypt Excursions Online"
    return {
        "companyName": name,
        "fromName": email_settings.get("fromName") or name,
        "replyTo": email_settings.get("replyTo") or contact.get("email"),
        "primaryColor": branding.get("primaryColor") or "#E63946",
        "logo": branding.get("logo"),
        "supportEmail": contact.get("email"),
        "supportPhone": contact.get("phone"),
    }


def format_booking_date(value: Optional[date]) -> str:
    """``Friday, March 14, 2025``"""
    if value is None:
        return ""
    return f"{value.strftime('%A, %B')} {value.day}, {value.year}"


def _layout(brand: dict, title: str, body: str) -> str:
    logo = f'<img src="{escape(brand["logo"])}" alt="" style="max-height: 48px;">' if brand.get("logo") else ""
    support = ""
    if brand.get("supportEmail") or brand.get("supportPhone"):
        parts = [escape(p) for p in (brand.get("supportEmail"), brand.get("supportPhone")) if p]
        support = f"<p>Questions? Contact us at {' / '.join(parts)}.</p>"
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        {logo}
        <h2 style="color: {escape(brand['primaryColor'])};">{title}</h2>
        {body}
        {support}
        <p style="color: #666; font-size: 12px; margin-top: 40px;">
            This is an automated message from {escape(brand['companyName'])}.
        </p>
    </body>
    </html>
    """


def _details(booking: Booking, tour: Tour) -> str:
    time_row = f"<p><strong>Time:</strong> {escape(booking.time)}</p>" if booking.time else ""
    return f"""
    <div style="background: #f8f9fa; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <p><strong>Tour:</strong> {escape(tour.title)}</p>
        <p><strong>Date:</strong> {format_booking_date(booking.date)}</p>
        {time_row}
        <p><strong>Guests:</strong> {booking.guests}</p>
        <p><strong>Booking reference:</strong> {escape(booking.booking_reference)}</p>
        <p><strong>Total:</strong> ${booking.total_price:.2f}</p>
    </div>
    """


async def _deliver(to_email: Optional[str], subject: str, html: str, brand: dict, tag: str) -> bool:
    if not to_email:
        logger.warning(f"No recipient for '{tag}' email; skipping")
        return False
    try:
        return await send_email(
            to_email,
            subject,
            html,
            from_name=brand["fromName"],
            reply_to=brand.get("replyTo"),
            tags=[tag],
        )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send '{tag}' email to {to_email}: {e}")
        return False


async def send_booking_confirmation(booking: Booking, tour: Tour, tenant_config: dict) -> bool:
    brand = email_branding(tenant_config)
    name = escape(booking.customer_name or "Valued Customer")
    body = f"""
    <p>Hi {name},</p>
    <p>Thank you for booking with {escape(brand['companyName'])}. Your booking is received.</p>
    {_details(booking, tour)}
    """
    html = _layout(brand, "Booking Confirmed", body)
    return await _deliver(
        booking.customer_email, f"🎉 Booking Confirmed - {tour.title}", html, brand, "booking-confirmation"
    )


async def send_cancellation_confirmation(
    booking: Booking,
    tour: Tour,
    tenant_config: dict,
    refund_amount: float,
    reason: str,
) -> bool:
    brand = email_branding(tenant_config)
    name = escape(booking.customer_name or "Valued Customer")
    refund = ""
    if refund_amount > 0:
        refund = (
            f"<p>A refund of <strong>${refund_amount:.2f}</strong> will be processed within "
            f"{REFUND_PROCESSING_DAYS} business days.</p>"
        )
    body = f"""
    <p>Hi {name},</p>
    <p>Your booking has been cancelled.</p>
    <p><strong>Reason:</strong> {escape(reason)}</p>
    {refund}
    {_details(booking, tour)}
    """
    html = _layout(brand, "Booking Cancelled", body)
    return await _deliver(
        booking.customer_email, f"❌ Booking Cancelled - {tour.title}", html, brand, "booking-cancellation"
    )


async def send_status_update(booking: Booking, tour: Tour, tenant_config: dict, previous_status: str) -> bool:
    brand = email_branding(tenant_config)
    name = escape(booking.customer_name or "Valued Customer")
    body = f"""
    <p>Hi {name},</p>
    <p>The status of your booking changed from <strong>{escape(previous_status)}</strong>
       to <strong>{escape(booking.status)}</strong>.</p>
    {_details(booking, tour)}
    """
    html = _layout(brand, "Booking Status Update", body)
    return await _deliver(
        booking.customer_email, f"📢 Booking Status Update - {tour.title}", html, brand, "booking-update"
    )


async def send_admin_booking_alert(booking: Booking, tour: Tour, tenant_config: dict) -> bool:
    admin_email = get_settings().admin_notification_email
    if not admin_email:
        return False
    brand = email_branding(tenant_config)
    customer = escape(booking.customer_name or booking.customer_email or "Unknown customer")
    body = f"""
    <p>New booking from {customer} ({escape(booking.tenant_id)}).</p>
    {_details(booking, tour)}
    """
    html = _layout(brand, "New Booking", body)
    return await _deliver(admin_email, f"📋 New Booking Alert - {tour.title}", html, brand, "admin-booking-alert")
