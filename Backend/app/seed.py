import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from .core.config import get_settings
from .models import (
    Availability,
    AvailabilitySlot,
    BlogPost,
    Category,
    Destination,
    Discount,
    SpecialOffer,
    Tenant,
    Tour,
)
from .tenancy import DEFAULT_TENANT_ID, default_tenant_config, fallback_tenant_config


settings = get_settings()
logger = logging.getLogger(__name__)

SEED_AVAILABILITY_DAYS = 30
SEED_SLOT_TIMES = ("08:00", "13:00")


def _tenant_from_config(config: dict, is_default: bool) -> Tenant:
    return Tenant(
        tenant_id=config["tenantId"],
        name=config["name"],
        slug=config.get("slug") or config["tenantId"],
        domain=config.get("domain"),
        domains=config.get("domains") or ([config["domain"]] if config.get("domain") else []),
        branding=config.get("branding") or {},
        seo=config.get("seo") or {},
        contact=config.get("contact") or {},
        features=config.get("features") or {},
        payments=config.get("payments") or {},
        email_settings=config.get("email") or {},
        localization=config.get("localization") or {},
        is_default=is_default,
        is_active=True,
    )


async def seed_initial_data(session):
    """Demo catalog for local development. Skips everything once the default tenant exists."""
    result = await session.execute(select(Tenant).where(Tenant.tenant_id == DEFAULT_TENANT_ID))
    if result.scalar_one_or_none():
        return

    default_config = fallback_tenant_config()
    default_config["tenantId"] = DEFAULT_TENANT_ID
    session.add(_tenant_from_config(default_config, is_default=True))
    session.add(_tenant_from_config(default_tenant_config("hurghada", "Hurghada Excursions"), is_default=False))

    desert = Category(tenant_id=DEFAULT_TENANT_ID, name="Desert Safari", slug="desert-safari")
    sea = Category(tenant_id=DEFAULT_TENANT_ID, name="Sea Trips", slug="sea-trips")
    cairo = Destination(tenant_id=DEFAULT_TENANT_ID, name="Cairo", slug="cairo", country="Egypt")
    hurghada = Destination(tenant_id="hurghada", name="Hurghada", slug="hurghada", country="Egypt")
    session.add_all([desert, sea, cairo, hurghada])
    await session.flush()

    pyramids = Tour(
        tenant_id=DEFAULT_TENANT_ID,
        title="Pyramids of Giza Day Tour",
        slug="pyramids-of-giza-day-tour",
        description="Guided visit to the Giza plateau, the Sphinx and the Valley Temple.",
        price=75.0,
        duration="8 hours",
        category_ids=[desert.id],
        destination_id=cairo.id,
        booking_options=[
            {"id": "shared", "label": "Shared group", "type": "shared", "price": 75.0},
            {"id": "private", "label": "Private tour", "type": "private", "price": 140.0},
        ],
        is_featured=True,
    )
    snorkel = Tour(
        tenant_id="hurghada",
        title="Giftun Island Snorkeling",
        slug="giftun-island-snorkeling",
        description="Full-day boat trip with two snorkeling stops and lunch on board.",
        price=45.0,
        discount_price=39.0,
        duration="7 hours",
        category_ids=[sea.id],
        destination_id=hurghada.id,
        booking_options=[{"id": "boat", "label": "Boat trip", "type": "shared", "price": 39.0}],
    )
    session.add_all([pyramids, snorkel])
    await session.flush()

    now = datetime.now(timezone.utc)
    session.add_all(
        [
            SpecialOffer(
                tenant_id=DEFAULT_TENANT_ID,
                name="Early Bird Pyramids",
                type="early_bird",
                discount_value=15,
                min_days_in_advance=14,
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=90),
                applicable_tours=[pyramids.id],
                priority=5,
                is_featured=True,
            ),
            SpecialOffer(
                tenant_id="hurghada",
                name="Family Group Deal",
                type="group",
                discount_value=10,
                min_group_size=4,
                max_discount=40,
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=60),
            ),
            SpecialOffer(
                tenant_id=DEFAULT_TENANT_ID,
                name="Summer Promo",
                type="promo_code",
                code="SUMMER10",
                discount_value=10,
                usage_limit=100,
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=120),
            ),
            Discount(tenant_id=DEFAULT_TENANT_ID, code="WELCOME5", discount_type="fixed", value=5.0),
        ]
    )

    today = now.date()
    for tour in (pyramids, snorkel):
        for offset in range(1, SEED_AVAILABILITY_DAYS + 1):
            record = Availability(tenant_id=tour.tenant_id, tour_id=tour.id, date=today + timedelta(days=offset))
            session.add(record)
            await session.flush()
            session.add_all(
                [AvailabilitySlot(availability_id=record.id, time=t, capacity=12) for t in SEED_SLOT_TIMES]
            )

    session.add(
        BlogPost(
            tenant_id=DEFAULT_TENANT_ID,
            slug="best-time-to-visit-the-pyramids",
            title="The Best Time to Visit the Pyramids",
        )
    )

    await session.commit()
    logger.info("Seeded demo tenants, catalog, offers and availability")
