"""
Checkout codes: lookup order (promo_code offers, then coupons), the error
messages customers see, and atomic usage redemption.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.offers import (
    PromoCodeError,
    batch_offer_badges,
    list_active_offers,
    redeem_code,
    redeem_discount,
    redeem_offer,
    verify_promo_code,
)


class TestVerifyPromoCode:
    async def test_blank_code(self, async_session):
        with pytest.raises(PromoCodeError) as exc:
            await verify_promo_code(async_session, "default", "   ")
        assert exc.value.status_code == 400
        assert exc.value.message == "Coupon code is required"

    async def test_unknown_code_is_404(self, async_session):
        with pytest.raises(PromoCodeError) as exc:
            await verify_promo_code(async_session, "default", "NOPE")
        assert exc.value.status_code == 404
        assert exc.value.message == "Invalid coupon code"

    async def test_promo_offer_matches_case_insensitively(self, async_session, make_offer):
        offer = await make_offer(type="promo_code", code="SUMMER10", discount_value=10, max_discount=15)
        verified = await verify_promo_code(async_session, "default", " summer10 ", price=300.0)

        assert verified.source == "offer"
        assert verified.record_id == offer.id
        assert verified.discount_for(300.0) == 15.0
        assert verified.to_dict(300.0)["discountedPrice"] == 285.0

    async def test_codes_are_tenant_scoped(self, async_session, make_discount):
        await make_discount("WELCOME5", tenant_id="hurghada")
        with pytest.raises(PromoCodeError) as exc:
            await verify_promo_code(async_session, "default", "WELCOME5")
        assert exc.value.status_code == 404

    async def test_expired_offer(self, async_session, make_offer):
        now = datetime.now(timezone.utc)
        await make_offer(
            type="promo_code",
            code="OLD",
            start_date=now - timedelta(days=30),
            end_date=now - timedelta(days=1),
        )
        with pytest.raises(PromoCodeError, match="This coupon has expired"):
            await verify_promo_code(async_session, "default", "OLD")

    async def test_offer_not_started(self, async_session, make_offer):
        now = datetime.now(timezone.utc)
        await make_offer(type="promo_code", code="SOON", start_date=now + timedelta(days=1))
        with pytest.raises(PromoCodeError, match="This coupon is not active yet"):
            await verify_promo_code(async_session, "default", "SOON")

    async def test_used_up_offer(self, async_session, make_offer):
        await make_offer(type="promo_code", code="ONCE", usage_limit=1, used_count=1)
        with pytest.raises(PromoCodeError, match="This coupon has reached its usage limit"):
            await verify_promo_code(async_session, "default", "ONCE")

    async def test_offer_for_other_tours(self, async_session, make_offer):
        await make_offer(type="promo_code", code="PYRAMIDS", applicable_tours=[99])
        with pytest.raises(PromoCodeError, match="This coupon does not apply to this tour"):
            await verify_promo_code(async_session, "default", "PYRAMIDS", tour_id=1)

    async def test_inactive_coupon(self, async_session, make_discount):
        await make_discount("OFF", is_active=False)
        with pytest.raises(PromoCodeError, match="This coupon is no longer active"):
            await verify_promo_code(async_session, "default", "OFF")

    async def test_expired_coupon(self, async_session, make_discount):
        await make_discount("LATE", expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        with pytest.raises(PromoCodeError, match="This coupon has expired"):
            await verify_promo_code(async_session, "default", "LATE")

    async def test_fixed_coupon(self, async_session, make_discount):
        await make_discount("WELCOME5", discount_type="fixed", value=5.0)
        verified = await verify_promo_code(async_session, "default", "welcome5")
        assert verified.source == "discount"
        assert verified.discount_for(3.0) == 3.0


class TestRedemption:
    async def test_offer_redemption_stops_at_limit(self, async_session, make_offer):
        offer = await make_offer(type="promo_code", code="TWICE", usage_limit=2)

        assert await redeem_offer(async_session, offer.id)
        assert await redeem_offer(async_session, offer.id)
        assert not await redeem_offer(async_session, offer.id)

        await async_session.refresh(offer)
        assert offer.used_count == 2

    async def test_unlimited_discount(self, async_session, make_discount):
        discount = await make_discount("FOREVER", usage_limit=0)
        for _ in range(3):
            assert await redeem_discount(async_session, discount.id)
        await async_session.refresh(discount)
        assert discount.times_used == 3

    async def test_redeem_code_dispatches_on_source(self, async_session, make_discount):
        discount = await make_discount("ONE", usage_limit=1)
        verified = await verify_promo_code(async_session, "default", "ONE")

        assert await redeem_code(async_session, verified)
        assert not await redeem_code(async_session, verified)


class TestOfferQueries:
    async def test_active_offers_ordered_by_priority(self, async_session, make_offer):
        low = await make_offer(priority=1, discount_value=50)
        high = await make_offer(priority=5, discount_value=5)
        await make_offer(is_active=False, priority=99)
        await make_offer(tenant_id="hurghada", priority=100)

        offers = await list_active_offers(async_session, "default")
        assert [o.id for o in offers] == [high.id, low.id]

    async def test_exhausted_offers_are_not_listed(self, async_session, make_offer):
        await make_offer(usage_limit=3, used_count=3)
        assert await list_active_offers(async_session, "default") == []

    async def test_batch_badges_follow_requested_order(self, async_session, make_offer):
        await make_offer(name="Tour 2 only", applicable_tours=[2], priority=3)
        await make_offer(name="Everything", priority=1)
        await make_offer(type="promo_code", code="HIDDEN", priority=50)

        badges = await batch_offer_badges(async_session, "default", [2, 1])

        assert [b["tourId"] for b in badges] == [2, 1]
        assert badges[0]["offerCount"] == 2
        assert badges[0]["bestOffer"]["name"] == "Tour 2 only"
        assert badges[1]["offerCount"] == 1
        assert badges[1]["bestOffer"]["name"] == "Everything"
