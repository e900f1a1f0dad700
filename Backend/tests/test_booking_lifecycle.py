"""
Booking lifecycle: refund policy, creation pricing, and the CAS-guarded
cancel / status / refund transitions.
"""
import re
from datetime import date, datetime, timedelta, timezone

import pytest

from app.availability import apply_stop_sale
from app.booking_lifecycle import (
    BookingCreateRequest,
    BookingError,
    assert_booking_owner,
    cancel_booking,
    create_booking,
    days_until_tour,
    generate_booking_reference,
    get_booking,
    list_user_bookings,
    refund_booking,
    refund_percentage,
    update_booking_status,
)
from app.core.request_context import RequestContext

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_ctx(user_id="customer-1", email="guest@example.com"):
    return RequestContext(user_id=user_id, auth_method="app_jwt", email=email)


def future_day(days=20):
    return date.today() + timedelta(days=days)


class TestRefundPolicy:
    def test_percentage_boundaries(self):
        assert refund_percentage(30) == 100
        assert refund_percentage(7) == 100
        assert refund_percentage(6) == 50
        assert refund_percentage(3) == 50
        assert refund_percentage(2) == 0
        assert refund_percentage(-1) == 0

    def test_days_are_rounded_up(self):
        assert days_until_tour(date(2030, 1, 8), NOW) == 7
        assert days_until_tour(date(2030, 1, 8), datetime(2030, 1, 1, tzinfo=timezone.utc)) == 7
        assert days_until_tour(date(2030, 1, 2), NOW) == 1

    def test_naive_now_is_utc(self):
        assert days_until_tour(date(2030, 1, 8), NOW.replace(tzinfo=None)) == 7


def test_reference_format():
    reference = generate_booking_reference(NOW)
    assert re.fullmatch(r"EEO-\d{8}-[A-Z0-9]{6}", reference)
    assert reference.startswith(f"EEO-{str(int(NOW.timestamp() * 1000))[-8:]}-")


class TestLookups:
    async def test_malformed_id_is_404(self, async_session):
        with pytest.raises(BookingError) as exc:
            await get_booking(async_session, "not-a-uuid")
        assert exc.value.status_code == 404

    async def test_owner_check(self, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        assert_booking_owner(booking, make_ctx())
        with pytest.raises(BookingError) as exc:
            assert_booking_owner(booking, make_ctx("someone-else"))
        assert exc.value.status_code == 403

    async def test_user_bookings_are_tenant_scoped(self, async_session, make_tour, make_booking):
        tour = await make_tour()
        mine = await make_booking(tour)
        await make_booking(tour, tenant_id="hurghada")
        await make_booking(tour, user_id="customer-2")

        bookings = await list_user_bookings(async_session, "default", "customer-1")
        assert [b.id for b in bookings] == [mine.id]


class TestCancelBooking:
    @pytest.mark.parametrize(
        "tour_day, percentage, amount",
        [(date(2030, 1, 8), 100, 200.0), (date(2030, 1, 5), 50, 100.0), (date(2030, 1, 3), 0, 0.0)],
    )
    async def test_refund_follows_policy(
        self, async_session, make_tour, make_booking, tour_day, percentage, amount
    ):
        booking = await make_booking(await make_tour(), date=tour_day, total_price=200.0)

        result = await cancel_booking(async_session, booking, cancelled_by="customer", now=NOW)

        assert result.refund_percentage == percentage
        assert result.refund_amount == amount
        assert booking.status == "Cancelled"
        assert booking.cancelled_by == "customer"
        assert booking.cancellation_reason == "Cancelled by customer"

    async def test_second_cancel_is_rejected(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        await cancel_booking(async_session, booking, cancelled_by="admin", reason="Weather")

        with pytest.raises(BookingError) as exc:
            await cancel_booking(async_session, booking, cancelled_by="customer")
        assert exc.value.status_code == 400
        assert exc.value.message == "Booking is already cancelled"
        assert booking.cancellation_reason == "Weather"

    async def test_refunded_booking_cannot_be_cancelled(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), status="Refunded")
        with pytest.raises(BookingError, match="cannot be cancelled"):
            await cancel_booking(async_session, booking, cancelled_by="customer")

    async def test_cancel_releases_seats(self, async_session, make_tour, make_availability, make_booking):
        tour = await make_tour()
        _, (slot,) = await make_availability(tour, future_day(), slots=[("09:00", 10)], booked=2)
        booking = await make_booking(tour, availability_slot_id=slot.id, guests=2)

        await cancel_booking(async_session, booking, cancelled_by="customer")

        await async_session.refresh(slot)
        assert slot.booked == 0


class TestUpdateBookingStatus:
    async def test_invalid_status(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        with pytest.raises(BookingError) as exc:
            await update_booking_status(async_session, booking, "shipped")
        assert exc.value.status_code == 400
        assert exc.value.message == "Invalid booking status: shipped"

    async def test_accepts_codes_and_returns_previous(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), status="Pending")

        previous = await update_booking_status(async_session, booking, "confirmed")

        assert previous == "Pending"
        assert booking.status == "Confirmed"

    async def test_same_status_is_a_no_op(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        assert await update_booking_status(async_session, booking, "Confirmed") == "Confirmed"

    async def test_terminal_status_releases_seats(
        self, async_session, make_tour, make_availability, make_booking
    ):
        tour = await make_tour()
        _, (slot,) = await make_availability(tour, future_day(), booked=3)
        booking = await make_booking(tour, availability_slot_id=slot.id, guests=3)

        await update_booking_status(async_session, booking, "cancelled")

        await async_session.refresh(slot)
        assert slot.booked == 0

    async def test_cancelled_cannot_be_reopened(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), status="Cancelled")

        with pytest.raises(BookingError) as exc:
            await update_booking_status(async_session, booking, "confirmed")
        assert exc.value.message == "Booking is Cancelled and cannot move back to Confirmed"

        assert await update_booking_status(async_session, booking, "refunded") == "Cancelled"


class TestRefundBooking:
    async def test_full_refund(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), total_price=240.0)

        await refund_booking(async_session, booking)

        assert booking.status == "Refunded"
        assert booking.payment_status == "refunded"
        assert booking.refund_amount == 240.0
        assert booking.refund_percentage == 100

    async def test_partial_refund(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), total_price=200.0)

        await refund_booking(async_session, booking, amount=50, reason="Late pickup")

        assert booking.status == "Partial Refunded"
        assert booking.payment_status == "partially_refunded"
        assert booking.refund_percentage == 25
        assert booking.cancellation_reason == "Late pickup"

    async def test_amount_above_total(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour(), total_price=100.0)
        with pytest.raises(BookingError, match="cannot exceed"):
            await refund_booking(async_session, booking, amount=150)

    async def test_refund_twice(self, async_session, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        await refund_booking(async_session, booking)
        with pytest.raises(BookingError, match="already refunded"):
            await refund_booking(async_session, booking)


class TestCreateBooking:
    async def test_best_offer_is_applied(self, async_session, make_tour, make_offer):
        tour = await make_tour()
        offer = await make_offer(discount_value=10)
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), guests=2)

        booking, _ = await create_booking(async_session, "default", request, make_ctx())

        assert booking.total_price == 180.0
        assert booking.status == "Pending"
        assert booking.user_id == "customer-1"
        assert booking.customer_email == "guest@example.com"
        assert booking.applied_offer["id"] == offer.id
        assert booking.applied_offer["discountAmount"] == 20.0
        await async_session.refresh(offer)
        assert offer.used_count == 1

    async def test_promo_code_replaces_auto_offer(self, async_session, make_tour, make_offer, make_discount):
        tour = await make_tour()
        offer = await make_offer(discount_value=50)
        discount = await make_discount("WELCOME5", value=5.0)
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), guests=2, promo_code="welcome5")

        booking, _ = await create_booking(async_session, "default", request, make_ctx())

        assert booking.total_price == 195.0
        assert booking.discount_code == "WELCOME5"
        assert booking.applied_offer["source"] == "discount"
        await async_session.refresh(discount)
        await async_session.refresh(offer)
        assert discount.times_used == 1
        assert offer.used_count == 0

    async def test_bad_promo_code_fails_the_booking(self, async_session, make_tour):
        tour = await make_tour()
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), promo_code="NOPE")
        with pytest.raises(BookingError) as exc:
            await create_booking(async_session, "default", request, make_ctx())
        assert exc.value.status_code == 404
        assert exc.value.message == "Invalid coupon code"

    async def test_option_price(self, async_session, make_tour):
        tour = await make_tour()
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), guests=2, option_id="private")
        booking, _ = await create_booking(async_session, "default", request, make_ctx())
        assert booking.total_price == 360.0
        assert booking.option_id == "private"

    async def test_takes_seats_from_the_slot(self, async_session, make_tour, make_availability):
        tour = await make_tour()
        _, (slot,) = await make_availability(tour, future_day(), slots=[("09:00", 4)])
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), time="09:00", guests=3)

        booking, _ = await create_booking(async_session, "default", request, make_ctx())

        assert booking.availability_slot_id == slot.id
        await async_session.refresh(slot)
        assert slot.booked == 3

    async def test_not_enough_seats(self, async_session, make_tour, make_availability):
        tour = await make_tour()
        await make_availability(tour, future_day(), slots=[("09:00", 2)])
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), time="09:00", guests=3)

        with pytest.raises(BookingError) as exc:
            await create_booking(async_session, "default", request, make_ctx())
        assert exc.value.status_code == 409

    async def test_unknown_time(self, async_session, make_tour, make_availability):
        tour = await make_tour()
        await make_availability(tour, future_day(), slots=[("09:00", 2)])
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), time="18:00")

        with pytest.raises(BookingError, match="Selected time is not available"):
            await create_booking(async_session, "default", request, make_ctx())

    async def test_stopped_day(self, async_session, make_tour):
        tour = await make_tour()
        await apply_stop_sale(
            async_session,
            tenant_id="default",
            tour_id=tour.id,
            option_ids=None,
            start=future_day(),
            end=future_day(),
            reason="Closed",
            applied_by="ops",
        )
        request = BookingCreateRequest(tour_id=tour.id, date=future_day())

        with pytest.raises(BookingError) as exc:
            await create_booking(async_session, "default", request, make_ctx())
        assert exc.value.status_code == 409

    async def test_past_date_and_unknown_tour(self, async_session, make_tour):
        tour = await make_tour()
        with pytest.raises(BookingError, match="past"):
            await create_booking(
                async_session, "default", BookingCreateRequest(tour_id=tour.id, date=future_day(-2)), make_ctx()
            )
        with pytest.raises(BookingError) as exc:
            await create_booking(
                async_session, "default", BookingCreateRequest(tour_id=9999, date=future_day()), make_ctx()
            )
        assert exc.value.status_code == 404

    async def test_unknown_option(self, async_session, make_tour):
        tour = await make_tour()
        request = BookingCreateRequest(tour_id=tour.id, date=future_day(), option_id="helicopter")
        with pytest.raises(BookingError, match="Unknown booking option"):
            await create_booking(async_session, "default", request, make_ctx())
