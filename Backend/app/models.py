import uuid
import datetime as dt

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.db import Base


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(64), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    domains: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    branding: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    seo: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    contact: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    features: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    payments: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    email_settings: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    localization: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ────────────────────────────────────────────────────────────────
# Catalog
# ────────────────────────────────────────────────────────────────

class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL / "shared" rows are visible to every tenant when shared content is requested
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_category_tenant_slug"),)


class Destination(Base):
    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_destination_tenant_slug"),)


class Tour(Base):
    __tablename__ = "tours"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    discount_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration: Mapped[str | None] = mapped_column(String(64), nullable=True)
    image: Mapped[str | None] = mapped_column(String(512), nullable=True)
    category_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    destination_id: Mapped[int | None] = mapped_column(ForeignKey("destinations.id"), nullable=True)
    # [{"id": "private", "label": "Private tour", "type": "private", "price": 120.0}, ...]
    booking_options: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_tour_tenant_slug"),)

    @property
    def effective_price(self) -> float:
        """Price the storefront shows before any offer is applied."""
        if self.discount_price and self.discount_price > 0:
            return self.discount_price
        return self.price

    @property
    def option_ids(self) -> list[str]:
        return [str(opt.get("id")) for opt in (self.booking_options or []) if opt.get("id") is not None]


# ────────────────────────────────────────────────────────────────
# Promotions
# ────────────────────────────────────────────────────────────────

class SpecialOffer(Base):
    __tablename__ = "special_offers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # percentage | fixed | bundle | early_bird | last_minute | group | promo_code
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    discount_value: Mapped[float] = mapped_column(Float, nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    min_days_in_advance: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_days_before_tour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_booking_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_discount: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_group_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    start_date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    travel_start_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    travel_end_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    blackout_dates: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    applicable_tours: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    # [{"tourId": 3, "selectedOptions": ["private"], "allOptions": false}, ...]
    tour_option_selections: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    excluded_tours: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    featured_badge_text: Mapped[str | None] = mapped_column(String(64), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_special_offer_tenant_code"),)


class Discount(Base):
    """Plain coupon code entered at checkout."""

    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)  # percentage | fixed
    value: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    times_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_discount_tenant_code"),)


# ────────────────────────────────────────────────────────────────
# Availability & Stop-Sales
# ────────────────────────────────────────────────────────────────

class Availability(Base):
    __tablename__ = "availability"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tour_id: Mapped[int] = mapped_column(ForeignKey("tours.id"), nullable=False, index=True)
    option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    stop_sale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stop_sale_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("tour_id", "date", name="uq_availability_tour_date"),)


class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    availability_id: Mapped[int] = mapped_column(
        ForeignKey("availability.id", ondelete="CASCADE"), nullable=False, index=True
    )
    time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    capacity: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    booked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    block_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    extra_capacity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("availability_id", "time", name="uq_slot_availability_time"),)

    @property
    def total_capacity(self) -> int:
        return (self.capacity or 0) + (self.extra_capacity or 0)

    @property
    def remaining(self) -> int:
        if self.blocked:
            return 0
        return max(0, self.total_capacity - (self.booked or 0))


class StopSale(Base):
    __tablename__ = "stop_sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tour_id: Mapped[int] = mapped_column(ForeignKey("tours.id"), nullable=False, index=True)
    # Empty list = every booking option of the tour
    option_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class StopSaleLog(Base):
    __tablename__ = "stop_sale_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tour_id: Mapped[int] = mapped_column(ForeignKey("tours.id"), nullable=False, index=True)
    option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date_from: Mapped[dt.date] = mapped_column(Date, nullable=False)
    date_to: Mapped[dt.date] = mapped_column(Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    applied_by: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)  # active | removed
    removed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    removed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    booking_reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    tour_id: Mapped[int] = mapped_column(ForeignKey("tours.id"), nullable=False, index=True)
    option_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    guests: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    total_price: Mapped[float] = mapped_column(Float, nullable=False)
    # Stored as the display label ("Partial Refunded"); see booking_status.py
    status: Mapped[str] = mapped_column(String(32), default="Pending", nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    refund_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    refund_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(16), nullable=True)  # customer | admin
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    applied_offer: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    discount_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    availability_slot_id: Mapped[int | None] = mapped_column(
        ForeignKey("availability_slots.id"), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "bookingReference": self.booking_reference,
            "tenantId": self.tenant_id,
            "tourId": self.tour_id,
            "optionId": self.option_id,
            "userId": self.user_id,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "date": self.date.isoformat() if self.date else None,
            "time": self.time,
            "guests": self.guests,
            "totalPrice": self.total_price,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "refundAmount": self.refund_amount,
            "refundPercentage": self.refund_percentage,
            "cancellationReason": self.cancellation_reason,
            "cancelledBy": self.cancelled_by,
            "appliedOffer": self.applied_offer,
            "discountCode": self.discount_code,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ────────────────────────────────────────────────────────────────
# Content & Audit
# ────────────────────────────────────────────────────────────────

class BlogPost(Base):
    __tablename__ = "blog_posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_blog_tenant_slug"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # "metadata" is reserved on declarative classes
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
