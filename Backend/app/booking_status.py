"""
Booking status vocabulary.

Two spellings of every status exist:

    API / filter codes (lowercase):  pending, confirmed, completed,
                                     cancelled, refunded, partial_refunded
    Stored display labels:           Pending, Confirmed, Completed,
                                     Cancelled, Refunded, Partial Refunded

Booking.status always holds the label. Older rows may still carry a code, so
filters match both spellings (see ``status_filter_values``).
"""

import re
from enum import Enum
from typing import Optional


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIAL_REFUNDED = "partial_refunded"


BOOKING_STATUS_LABEL: dict[BookingStatus, str] = {
    BookingStatus.PENDING: "Pending",
    BookingStatus.CONFIRMED: "Confirmed",
    BookingStatus.COMPLETED: "Completed",
    BookingStatus.CANCELLED: "Cancelled",
    BookingStatus.REFUNDED: "Refunded",
    BookingStatus.PARTIAL_REFUNDED: "Partial Refunded",
}

# Labels first, then the raw codes accepted for backward compatibility
BOOKING_STATUSES_DB: list[str] = list(BOOKING_STATUS_LABEL.values()) + [s.value for s in BookingStatus]

# Statuses after which a booking can no longer be cancelled
TERMINAL_STATUSES = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.REFUNDED, BookingStatus.PARTIAL_REFUNDED}
)


def to_booking_status_code(value: Optional[str]) -> Optional[BookingStatus]:
    """
    Normalize a code or label into a BookingStatus.

    Examples:
        to_booking_status_code("Partial Refunded") -> BookingStatus.PARTIAL_REFUNDED
        to_booking_status_code("partial-refunded") -> BookingStatus.PARTIAL_REFUNDED
        to_booking_status_code("  pending  ")      -> BookingStatus.PENDING
        to_booking_status_code("unknown")          -> None
    """
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = re.sub(r"\s+", "_", raw.lower()).replace("-", "_")
    try:
        return BookingStatus(normalized)
    except ValueError:
        return None


def to_booking_status_db(value: Optional[str]) -> Optional[str]:
    """Map a code or label to the label stored on Booking.status."""
    code = to_booking_status_code(value)
    if code is None:
        return None
    return BOOKING_STATUS_LABEL[code]


def status_filter_values(value: Optional[str]) -> list[str]:
    """Both spellings of a status, for ``Booking.status.in_(...)`` filters."""
    code = to_booking_status_code(value)
    if code is None:
        return []
    return [BOOKING_STATUS_LABEL[code], code.value]


def is_terminal(value: Optional[str]) -> bool:
    code = to_booking_status_code(value)
    return code in TERMINAL_STATUSES
