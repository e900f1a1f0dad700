import logging
from typing import Optional

import httpx

from .core.config import get_settings

logger = logging.getLogger(__name__)


def sender_address(from_name: Optional[str] = None) -> str:
    """``"Tenant Name <bookings@example.com>"``, or the bare address without a name."""
    from_email = get_settings().mailgun_from_email
    if from_name:
        return f"{from_name} <{from_email}>"
    return from_email


async def send_email(
    to_email: str,
    subject: str,
    html: str,
    from_name: Optional[str] = None,
    reply_to: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> bool:
    """
    Send one message through the Mailgun HTTP API.

    Returns False when Mailgun is not configured. Transport errors propagate;
    callers decide whether a failed email matters.
    """
    settings = get_settings()
    if not settings.mailgun_api_key or not settings.mailgun_domain or not settings.mailgun_from_email:
        logger.warning("Mailgun is not configured; skipping email send.")
        return False

    data = {
        "from": sender_address(from_name),
        "to": to_email,
        "subject": subject,
        "html": html,
    }
    if reply_to:
        data["h:Reply-To"] = reply_to
    if tags:
        data["o:tag"] = tags

    url = f"{settings.mailgun_api_base.rstrip('/')}/{settings.mailgun_domain}/messages"
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.post(url, auth=("api", settings.mailgun_api_key), data=data)
        response.raise_for_status()

    logger.info(f"Sent email '{subject}' to {to_email}")
    return True
