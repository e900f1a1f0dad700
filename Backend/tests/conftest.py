"""
Pytest configuration and fixtures for async database testing.

Every test gets a fresh in-memory SQLite database (aiosqlite) with the full
schema. The FastAPI app shares the test's session through a dependency
override, so rows written by a fixture are visible to the request and rows
committed by a route are visible to the assertions.
"""
import itertools
import os

# Must be set before any app module reads settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["MAILGUN_API_KEY"] = ""
os.environ["MAILGUN_DOMAIN"] = ""
os.environ["BLOG_LIKE_LIMIT"] = "3"
os.environ["BLOG_LIKE_WINDOW_SECONDS"] = "60"
os.environ["TENANT_CACHE_TTL_SECONDS"] = "0"

from datetime import date, datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.db import Base, get_session
from app.firebase_auth import create_access_token
from app.models import (
    Availability,
    AvailabilitySlot,
    BlogPost,
    Booking,
    Discount,
    SpecialOffer,
    Tenant,
    Tour,
)
from app.rate_limiter import RateLimiter, set_rate_limiter
from app.tenancy import DEFAULT_TENANT_ID, clear_tenant_cache

ALL_ADMIN_PERMISSIONS = [
    "manageBookings",
    "manageTours",
    "manageDiscounts",
    "manageTenants",
    "manageDashboard",
]

_seq = itertools.count(1)


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Tenant config cache and rate-limit windows are process-wide."""
    clear_tenant_cache()
    set_rate_limiter(RateLimiter(None))
    yield
    clear_tenant_cache()
    set_rate_limiter(None)


@pytest.fixture(scope="function")
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture(scope="function")
async def client(async_session):
    """AsyncClient against the app, sharing ``async_session``."""
    # Import here so the environment above is in place first
    from app.main import app

    async def override_get_session():
        yield async_session

    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================================
# AUTH HEADERS
# ============================================================================

def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    def _make(user_id: str = "customer-1", email: str = "guest@example.com") -> dict:
        return bearer(create_access_token(user_id, email=email))

    return _make


@pytest.fixture
def admin_headers():
    def _make(*permissions: str, user_id: str = "admin-1", role: str = "operations") -> dict:
        token = create_access_token(
            user_id,
            email=f"{user_id}@example.com",
            scope="admin",
            role=role,
            permissions=list(permissions) or ALL_ADMIN_PERMISSIONS,
        )
        return bearer(token)

    return _make


@pytest.fixture
def super_admin_headers():
    return bearer(
        create_access_token("root", email="root@example.com", scope="admin", role="super_admin")
    )


# ============================================================================
# ROW FACTORIES
# ============================================================================

@pytest.fixture
def make_tenant(async_session):
    async def _make(tenant_id: str = "hurghada", **overrides) -> Tenant:
        data = {
            "tenant_id": tenant_id,
            "name": tenant_id.title(),
            "slug": tenant_id,
            "domain": f"{tenant_id}tours.com",
            "domains": [f"{tenant_id}tours.com"],
            "branding": {"primaryColor": "#123456"},
            "email_settings": {"fromName": tenant_id.title()},
            "is_default": tenant_id == DEFAULT_TENANT_ID,
            "is_active": True,
        }
        data.update(overrides)
        tenant = Tenant(**data)
        async_session.add(tenant)
        await async_session.flush()
        return tenant

    return _make


@pytest.fixture
def make_tour(async_session):
    async def _make(**overrides) -> Tour:
        n = next(_seq)
        data = {
            "tenant_id": DEFAULT_TENANT_ID,
            "title": f"Nile Felucca Ride {n}",
            "slug": f"nile-felucca-ride-{n}",
            "price": 100.0,
            "booking_options": [
                {"id": "shared", "label": "Shared", "type": "shared", "price": 100.0},
                {"id": "private", "label": "Private", "type": "private", "price": 180.0},
            ],
            "is_published": True,
            "is_active": True,
        }
        data.update(overrides)
        tour = Tour(**data)
        async_session.add(tour)
        await async_session.flush()
        return tour

    return _make


@pytest.fixture
def make_offer(async_session):
    async def _make(**overrides) -> SpecialOffer:
        now = datetime.now(timezone.utc)
        data = {
            "tenant_id": DEFAULT_TENANT_ID,
            "name": f"Offer {next(_seq)}",
            "type": "percentage",
            "discount_value": 10.0,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "used_count": 0,
            "is_active": True,
            "priority": 0,
        }
        data.update(overrides)
        offer = SpecialOffer(**data)
        async_session.add(offer)
        await async_session.flush()
        return offer

    return _make


@pytest.fixture
def make_discount(async_session):
    async def _make(code: str = "WELCOME5", **overrides) -> Discount:
        data = {
            "tenant_id": DEFAULT_TENANT_ID,
            "code": code,
            "discount_type": "fixed",
            "value": 5.0,
            "is_active": True,
            "times_used": 0,
        }
        data.update(overrides)
        discount = Discount(**data)
        async_session.add(discount)
        await async_session.flush()
        return discount

    return _make


@pytest.fixture
def make_availability(async_session):
    async def _make(tour: Tour, day: date, slots=(("09:00", 10),), **overrides) -> tuple[Availability, list]:
        record = Availability(
            tenant_id=overrides.pop("tenant_id", tour.tenant_id or DEFAULT_TENANT_ID),
            tour_id=tour.id,
            date=day,
            stop_sale=overrides.pop("stop_sale", False),
            stop_sale_reason=overrides.pop("stop_sale_reason", None),
        )
        async_session.add(record)
        await async_session.flush()
        rows = []
        for slot_time, capacity in slots:
            slot = AvailabilitySlot(
                availability_id=record.id,
                time=slot_time,
                capacity=capacity,
                booked=overrides.get("booked", 0),
                extra_capacity=overrides.get("extra_capacity", 0),
                blocked=overrides.get("blocked", False),
            )
            async_session.add(slot)
            rows.append(slot)
        await async_session.flush()
        return record, rows

    return _make


@pytest.fixture
def make_booking(async_session):
    async def _make(tour: Tour, **overrides) -> Booking:
        n = next(_seq)
        data = {
            "tenant_id": tour.tenant_id or DEFAULT_TENANT_ID,
            "booking_reference": f"EEO-{n:08d}-TEST{n:02d}",
            "tour_id": tour.id,
            "user_id": "customer-1",
            "customer_name": "Guest",
            "customer_email": "guest@example.com",
            "date": date.today() + timedelta(days=10),
            "time": None,
            "guests": 2,
            "total_price": 200.0,
            "status": "Confirmed",
        }
        data.update(overrides)
        booking = Booking(**data)
        async_session.add(booking)
        await async_session.flush()
        return booking

    return _make


@pytest.fixture
def make_blog_post(async_session):
    async def _make(slug: str = "nile-cruise-guide", **overrides) -> BlogPost:
        data = {"tenant_id": DEFAULT_TENANT_ID, "slug": slug, "title": "Nile Cruise Guide", "likes": 0}
        data.update(overrides)
        post = BlogPost(**data)
        async_session.add(post)
        await async_session.flush()
        return post

    return _make
