"""
Tenant-scoped query helpers.

ALL catalog and back-office queries go through these helpers so a tenant
never sees another tenant's rows.

Two scoping modes exist:

    strict      tenant_id == :tenant                   (bookings, offers, admin)
    fallback    tenant_id IN (:tenant, 'default')      (public catalog)

New tenants inherit the default tenant's catalog until they publish their
own: ``resolve_catalog_clause`` picks strict scoping once the tenant owns at
least one row of the model, and the fallback clause otherwise.

Usage:
    from app.tenancy.queries import list_public_tours, tenant_filter

    tours = await list_public_tours(session, tenant.tenant_id)
    stmt = select(SpecialOffer).where(tenant_filter(SpecialOffer, tenant.tenant_id))
"""

import logging
from typing import Any, Optional, Sequence, Type, TypeVar

from sqlalchemy import ColumnElement, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Category, Tour
from .config import DEFAULT_TENANT_ID, SHARED_TENANT_ID

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def tenant_filter(model: Type[T], tenant_id: str) -> ColumnElement[bool]:
    """
    Strict tenant clause.

    Usage:
        stmt = select(Booking).where(tenant_filter(Booking, tenant_id), Booking.status == "Pending")
    """
    return model.tenant_id == tenant_id


def build_tenant_clause(
    model: Type[T],
    tenant_id: str,
    include_default: bool = True,
    include_shared: bool = False,
) -> ColumnElement[bool]:
    """
    Tenant clause that can also admit default-tenant and shared rows.

    - include_default=True  -> tenant_id IN (tenant, 'default'); 'default' once
    - include_shared=True   -> also 'shared' and NULL tenant rows
    - include_default=False -> strict clause (include_shared ignored)
    """
    if not include_default:
        return tenant_filter(model, tenant_id)

    tenant_ids: list[Any] = [tenant_id]
    if tenant_id != DEFAULT_TENANT_ID:
        tenant_ids.append(DEFAULT_TENANT_ID)

    if include_shared:
        tenant_ids.append(SHARED_TENANT_ID)
        return or_(model.tenant_id.in_(tenant_ids), model.tenant_id.is_(None))
    return model.tenant_id.in_(tenant_ids)


async def count_owned(
    session: AsyncSession,
    model: Type[T],
    tenant_id: str,
    *criteria: ColumnElement[bool],
) -> int:
    result = await session.execute(
        select(func.count()).select_from(model).where(tenant_filter(model, tenant_id), *criteria)
    )
    return int(result.scalar_one())


async def resolve_catalog_clause(
    session: AsyncSession,
    model: Type[T],
    tenant_id: str,
    *criteria: ColumnElement[bool],
) -> ColumnElement[bool]:
    """
    Strict clause if the tenant owns any matching rows, else the default fallback.

    ``criteria`` narrow the ownership count (e.g. only published tours count).
    """
    owned = await count_owned(session, model, tenant_id, *criteria)
    if owned > 0:
        return tenant_filter(model, tenant_id)
    logger.debug(f"Tenant {tenant_id} owns no {model.__tablename__}; falling back to '{DEFAULT_TENANT_ID}'")
    return build_tenant_clause(model, tenant_id, include_default=True)


# ────────────────────────────────────────────────────────────────
# Catalog Queries
# ────────────────────────────────────────────────────────────────

def _published_tour_criteria() -> tuple[ColumnElement[bool], ...]:
    return (Tour.is_published.is_(True), Tour.is_active.is_(True))


async def list_public_tours(
    session: AsyncSession,
    tenant_id: str,
    category_id: Optional[int] = None,
    featured_only: bool = False,
    limit: Optional[int] = None,
) -> Sequence[Tour]:
    """Published tours for the storefront, featured first, newest next."""
    criteria = _published_tour_criteria()
    clause = await resolve_catalog_clause(session, Tour, tenant_id, *criteria)
    stmt = (
        select(Tour)
        .where(clause, *criteria)
        .order_by(Tour.is_featured.desc(), Tour.created_at.desc(), Tour.id.desc())
    )
    if featured_only:
        stmt = stmt.where(Tour.is_featured.is_(True))
    if category_id is None:
        if limit:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return result.scalars().all()

    # category_ids is a JSON list; filter in Python for portability, then limit
    result = await session.execute(stmt)
    tours = [t for t in result.scalars().all() if category_id in (t.category_ids or [])]
    return tours[:limit] if limit else tours


async def get_public_tour(session: AsyncSession, tenant_id: str, tour_id: int) -> Optional[Tour]:
    """A published tour visible to the tenant (own catalog or inherited default)."""
    criteria = _published_tour_criteria()
    clause = await resolve_catalog_clause(session, Tour, tenant_id, *criteria)
    result = await session.execute(select(Tour).where(Tour.id == tour_id, clause, *criteria))
    return result.scalar_one_or_none()


async def list_categories(session: AsyncSession, tenant_id: str) -> Sequence[Category]:
    clause = await resolve_catalog_clause(session, Category, tenant_id)
    result = await session.execute(select(Category).where(clause).order_by(Category.name))
    return result.scalars().all()
