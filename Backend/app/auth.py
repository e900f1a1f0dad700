"""
Admin authorization helpers and audit logging.

ARCHITECTURE:
    - RequestContext (core/request_context.py) is the SINGLE SOURCE OF TRUTH
      for identity
    - Admin routes depend on require_admin(<permission>, ...)
    - Rows fetched by id in admin routes go through assert_tenant_scoped_row()
      before being mutated
    - Every admin mutation writes an AuditLog row via log_audit()

USAGE:
    from app.auth import require_admin, PERM_MANAGE_BOOKINGS, log_audit, AUDIT_BOOKING_CANCELLED

    @router.post("/api/admin/bookings/{booking_id}/cancel")
    async def cancel(
        admin: RequestContext = Depends(require_admin(PERM_MANAGE_BOOKINGS)),
        tenant: TenantContext = Depends(get_tenant_context),
        session: AsyncSession = Depends(get_session),
    ):
        booking = await get_booking(session, booking_id)
        assert_tenant_scoped_row(booking.tenant_id, tenant.tenant_id, admin)
        ...
"""

import logging
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .core.request_context import (
    RequestContext,
    get_optional_request_context,
    get_request_context,
    require_admin,
    require_admin_access,
)
from .models import AuditLog

logger = logging.getLogger(__name__)


__all__ = [
    "RequestContext",
    "get_request_context",
    "get_optional_request_context",
    "require_admin",
    "require_admin_access",
    # Permissions
    "PERM_MANAGE_BOOKINGS",
    "PERM_MANAGE_TOURS",
    "PERM_MANAGE_DISCOUNTS",
    "PERM_MANAGE_TENANTS",
    "PERM_VIEW_DASHBOARD",
    # Tenant enforcement
    "assert_tenant_scoped_row",
    # Audit logging
    "log_audit",
    "AUDIT_BOOKING_CREATED",
    "AUDIT_BOOKING_STATUS_CHANGED",
    "AUDIT_BOOKING_CANCELLED",
    "AUDIT_BOOKING_REFUNDED",
    "AUDIT_OFFER_CREATED",
    "AUDIT_OFFER_UPDATED",
    "AUDIT_OFFER_DELETED",
    "AUDIT_DISCOUNT_CREATED",
    "AUDIT_DISCOUNT_UPDATED",
    "AUDIT_DISCOUNT_DELETED",
    "AUDIT_AVAILABILITY_UPDATED",
    "AUDIT_STOP_SALE_APPLIED",
    "AUDIT_STOP_SALE_REMOVED",
    "AUDIT_TENANT_CREATED",
    "AUDIT_TENANT_UPDATED",
    "AUDIT_TOUR_CREATED",
    "AUDIT_TOUR_UPDATED",
    "AUDIT_TOUR_DELETED",
    "AUDIT_CATEGORY_CREATED",
    "AUDIT_CATEGORY_UPDATED",
    "AUDIT_CATEGORY_DELETED",
    "AUDIT_DESTINATION_CREATED",
    "AUDIT_DESTINATION_UPDATED",
    "AUDIT_DESTINATION_DELETED",
]


# ============================================================================
# ADMIN PERMISSIONS (carried in the admin token's "permissions" claim)
# ============================================================================

PERM_MANAGE_BOOKINGS = "manageBookings"
PERM_MANAGE_TOURS = "manageTours"
PERM_MANAGE_DISCOUNTS = "manageDiscounts"
PERM_MANAGE_TENANTS = "manageTenants"
PERM_VIEW_DASHBOARD = "manageDashboard"


# ============================================================================
# TENANT ENFORCEMENT
# ============================================================================

def assert_tenant_scoped_row(
    row_tenant_id: Optional[str],
    ctx_tenant_id: str,
    admin: Optional[RequestContext] = None,
) -> None:
    """
    Assert that a row belongs to the request's tenant.

    Super admins manage every tenant and skip the check.

    Raises:
        HTTPException 403: If tenant ids don't match
    """
    if admin is not None and admin.is_super_admin:
        return
    if row_tenant_id != ctx_tenant_id:
        logger.error(
            f"Tenant boundary violation! Row tenant_id={row_tenant_id}, "
            f"request tenant_id={ctx_tenant_id}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Resource belongs to a different tenant.",
        )


# ============================================================================
# AUDIT LOGGING
# ============================================================================

async def log_audit(
    session: AsyncSession,
    *,
    actor_user_id: str,
    action: str,
    tenant_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditLog:
    """
    Create an audit log entry. Does not commit; the caller owns the transaction.

    IMPORTANT: keep customer emails and names out of metadata.

    Example:
        await log_audit(
            session,
            actor_user_id=admin.user_id,
            action=AUDIT_BOOKING_CANCELLED,
            tenant_id=booking.tenant_id,
            target_type="booking",
            target_id=str(booking.id),
            metadata={"refundPercentage": 50},
        )
    """
    audit_log = AuditLog(
        tenant_id=tenant_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        extra_data=metadata,
    )
    session.add(audit_log)
    await session.flush()

    logger.info(
        f"Audit: {action} by {actor_user_id} "
        f"(tenant={tenant_id}, target={target_type}:{target_id})"
    )
    return audit_log


# Bookings
AUDIT_BOOKING_CREATED = "booking.created"
AUDIT_BOOKING_STATUS_CHANGED = "booking.status_changed"
AUDIT_BOOKING_CANCELLED = "booking.cancelled"
AUDIT_BOOKING_REFUNDED = "booking.refunded"

# Promotions
AUDIT_OFFER_CREATED = "offer.created"
AUDIT_OFFER_UPDATED = "offer.updated"
AUDIT_OFFER_DELETED = "offer.deleted"
AUDIT_DISCOUNT_CREATED = "discount.created"
AUDIT_DISCOUNT_UPDATED = "discount.updated"
AUDIT_DISCOUNT_DELETED = "discount.deleted"

# Availability
AUDIT_AVAILABILITY_UPDATED = "availability.updated"
AUDIT_STOP_SALE_APPLIED = "stop_sale.applied"
AUDIT_STOP_SALE_REMOVED = "stop_sale.removed"

# Tenants
AUDIT_TENANT_CREATED = "tenant.created"
AUDIT_TENANT_UPDATED = "tenant.updated"

# Catalog
AUDIT_TOUR_CREATED = "tour.created"
AUDIT_TOUR_UPDATED = "tour.updated"
AUDIT_TOUR_DELETED = "tour.deleted"
AUDIT_CATEGORY_CREATED = "category.created"
AUDIT_CATEGORY_UPDATED = "category.updated"
AUDIT_CATEGORY_DELETED = "category.deleted"
AUDIT_DESTINATION_CREATED = "destination.created"
AUDIT_DESTINATION_UPDATED = "destination.updated"
AUDIT_DESTINATION_DELETED = "destination.deleted"
