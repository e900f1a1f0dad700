"""
Customer booking endpoints: create, list own, cancel with refund policy, lookups.
"""
from datetime import date, timedelta

from sqlalchemy import select

from app.models import AuditLog


def booking_body(tour_id, **overrides):
    body = {"tourId": tour_id, "date": (date.today() + timedelta(days=14)).isoformat(), "guests": 2}
    body.update(overrides)
    return body


class TestCreateBooking:
    async def test_guest_checkout(self, client, async_session, make_tour):
        tour = await make_tour()
        response = await client.post(
            "/api/bookings",
            json=booking_body(tour.id, customerName="Mona", customerEmail="mona@example.com"),
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "Pending"
        assert data["totalPrice"] == 200.0
        assert data["userId"] is None
        assert data["bookingReference"].startswith("EEO-")

        audit = (await async_session.execute(select(AuditLog))).scalar_one()
        assert audit.action == "booking.created"
        assert audit.actor_user_id == "guest"

    async def test_signed_in_booking_is_owned(self, client, make_tour, customer_headers):
        tour = await make_tour()
        response = await client.post("/api/bookings", json=booking_body(tour.id), headers=customer_headers())

        data = response.json()["data"]
        assert data["userId"] == "customer-1"
        assert data["customerEmail"] == "guest@example.com"

    async def test_validation_envelope(self, client, make_tour):
        tour = await make_tour()
        response = await client.post("/api/bookings", json=booking_body(tour.id, guests=0))

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["error"].startswith("guests:")

    async def test_sold_out_is_conflict(self, client, make_tour, make_availability):
        tour = await make_tour()
        day = date.today() + timedelta(days=14)
        await make_availability(tour, day, slots=[("09:00", 1)])

        response = await client.post("/api/bookings", json=booking_body(tour.id, time="09:00"))

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "error": "Not enough seats left for the selected time",
            "code": "CONFLICT",
        }

    async def test_promo_code_error_passes_through(self, client, make_tour):
        tour = await make_tour()
        response = await client.post("/api/bookings", json=booking_body(tour.id, promoCode="BOGUS"))
        assert response.status_code == 404
        assert response.json()["error"] == "Invalid coupon code"


class TestMyBookings:
    async def test_requires_auth(self, client):
        response = await client.get("/api/bookings/mine")
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_REQUIRED"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_lists_only_own_bookings(self, client, make_tour, make_booking, customer_headers):
        tour = await make_tour()
        mine = await make_booking(tour)
        await make_booking(tour, user_id="customer-2")

        body = (await client.get("/api/bookings/mine", headers=customer_headers())).json()

        assert [b["id"] for b in body["data"]] == [str(mine.id)]
        assert body["meta"] == {"count": 1}

    async def test_rejects_garbage_token(self, client):
        response = await client.get("/api/bookings/mine", headers={"Authorization": "Bearer not.a.jwt"})
        assert response.status_code == 401


class TestCancelBooking:
    async def test_owner_cancels_with_full_refund(self, client, make_tour, make_booking, customer_headers):
        booking = await make_booking(await make_tour(), date=date.today() + timedelta(days=30))

        response = await client.post(
            f"/api/bookings/{booking.id}/cancel",
            json={"reason": "Change of plans"},
            headers=customer_headers(),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Booking cancelled successfully"
        assert body["refundAmount"] == 200.0
        assert body["refundPercentage"] == 100
        assert body["data"]["status"] == "Cancelled"

    async def test_cancel_without_body(self, client, make_tour, make_booking, customer_headers):
        booking = await make_booking(await make_tour(), date=date.today() + timedelta(days=1))

        response = await client.post(f"/api/bookings/{booking.id}/cancel", headers=customer_headers())

        assert response.status_code == 200
        assert response.json()["refundPercentage"] == 0

    async def test_other_customer_gets_403(self, client, make_tour, make_booking, customer_headers):
        booking = await make_booking(await make_tour())

        response = await client.post(
            f"/api/bookings/{booking.id}/cancel", headers=customer_headers("customer-2")
        )

        assert response.status_code == 403
        assert response.json()["error"] == "You can only cancel your own bookings"

    async def test_second_cancel_is_400(self, client, make_tour, make_booking, customer_headers):
        booking = await make_booking(await make_tour())
        url = f"/api/bookings/{booking.id}/cancel"

        assert (await client.post(url, headers=customer_headers())).status_code == 200
        response = await client.post(url, headers=customer_headers())

        assert response.status_code == 400
        assert response.json()["error"] == "Booking is already cancelled"

    async def test_unknown_booking(self, client, customer_headers):
        response = await client.post(
            "/api/bookings/00000000-0000-0000-0000-000000000000/cancel", headers=customer_headers()
        )
        assert response.status_code == 404

    async def test_requires_auth(self, client, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        response = await client.post(f"/api/bookings/{booking.id}/cancel")
        assert response.status_code == 401


class TestBookingLookups:
    async def test_verify_by_reference(self, client, make_tour, make_booking):
        tour = await make_tour(title="Giftun Island Snorkeling", duration="6 hours")
        booking = await make_booking(tour, customer_name="Mona")

        response = await client.get(f"/api/bookings/verify/{booking.booking_reference.lower()}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["bookingReference"] == booking.booking_reference
        assert data["customerName"] == "Mona"
        assert data["tour"]["title"] == "Giftun Island Snorkeling"
        assert "customerEmail" not in data
        assert "userId" not in data

    async def test_verify_stays_within_tenant(self, client, make_tour, make_booking):
        booking = await make_booking(await make_tour(tenant_id="luxor"))

        response = await client.get(f"/api/bookings/verify/{booking.booking_reference}")

        assert response.status_code == 404
        assert response.json()["error"] == "Booking not found"

    async def test_owner_fetches_booking(self, client, make_tour, make_booking, customer_headers):
        tour = await make_tour()
        booking = await make_booking(tour)

        response = await client.get(f"/api/bookings/{booking.id}", headers=customer_headers())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == str(booking.id)
        assert data["customerEmail"] == "guest@example.com"
        assert data["tour"]["id"] == tour.id

    async def test_other_customer_cannot_fetch(self, client, make_tour, make_booking, customer_headers):
        booking = await make_booking(await make_tour())

        response = await client.get(f"/api/bookings/{booking.id}", headers=customer_headers("customer-2"))

        assert response.status_code == 403
        assert response.json()["error"] == "Not authorized to view this booking"

    async def test_fetch_requires_auth(self, client, make_tour, make_booking):
        booking = await make_booking(await make_tour())
        assert (await client.get(f"/api/bookings/{booking.id}")).status_code == 401
