"""
Booking emails: tenant branding, content, Mailgun delivery and failure handling.
"""
from datetime import date

import httpx
import pytest

from app import emailer, notifications
from app.core.config import get_settings
from app.models import Booking, Tour

REAL_ASYNC_CLIENT = httpx.AsyncClient

TENANT_CONFIG = {
    "name": "Hurghada Tours",
    "branding": {"primaryColor": "#0077B6", "logo": "/logo.png"},
    "contact": {"email": "help@hurghadatours.com", "phone": "+20 100"},
    "email": {"fromName": "Hurghada Bookings"},
}


def make_booking(**overrides):
    data = {
        "tenant_id": "hurghada",
        "booking_reference": "EEO-12345678-ABC123",
        "tour_id": 1,
        "customer_name": "Mona <b>",
        "customer_email": "mona@example.com",
        "date": date(2025, 3, 14),
        "time": "09:00",
        "guests": 2,
        "total_price": 180.0,
        "status": "Confirmed",
    }
    data.update(overrides)
    return Booking(**data)


@pytest.fixture
def sent(monkeypatch):
    """Captures send_email calls instead of hitting Mailgun."""
    calls = []

    async def fake_send_email(to_email, subject, html, from_name=None, reply_to=None, tags=None):
        calls.append({"to": to_email, "subject": subject, "html": html, "from_name": from_name, "reply_to": reply_to, "tags": tags})
        return True

    monkeypatch.setattr(notifications, "send_email", fake_send_email)
    return calls


class TestBranding:
    def test_tenant_values(self):
        brand = notifications.email_branding(TENANT_CONFIG)
        assert brand["fromName"] == "Hurghada Bookings"
        assert brand["replyTo"] == "help@hurghadatours.com"
        assert brand["primaryColor"] == "#0077B6"

    def test_defaults(self):
        brand = notifications.email_branding({})
        assert brand["companyName"] == "Egypt Excursions Online"
        assert brand["fromName"] == "Egypt Excursions Online"

    def test_date_format(self):
        assert notifications.format_booking_date(date(2025, 3, 14)) == "Friday, March 14, 2025"
        assert notifications.format_booking_date(None) == ""


class TestCustomerEmails:
    async def test_confirmation(self, sent):
        tour = Tour(title="Giftun Island Snorkeling")
        assert await notifications.send_booking_confirmation(make_booking(), tour, TENANT_CONFIG)

        (email,) = sent
        assert email["to"] == "mona@example.com"
        assert email["subject"] == "🎉 Booking Confirmed - Giftun Island Snorkeling"
        assert email["from_name"] == "Hurghada Bookings"
        assert email["tags"] == ["booking-confirmation"]
        assert "Mona &lt;b&gt;" in email["html"]
        assert "Friday, March 14, 2025" in email["html"]
        assert "$180.00" in email["html"]

    async def test_cancellation_mentions_refund(self, sent):
        tour = Tour(title="Desert Safari")
        await notifications.send_cancellation_confirmation(
            make_booking(), tour, TENANT_CONFIG, 90.0, "Cancelled by customer"
        )
        assert "A refund of <strong>$90.00</strong>" in sent[0]["html"]

    async def test_cancellation_without_refund(self, sent):
        await notifications.send_cancellation_confirmation(
            make_booking(), Tour(title="Desert Safari"), TENANT_CONFIG, 0.0, "Late"
        )
        assert "refund" not in sent[0]["html"].lower()

    async def test_status_update(self, sent):
        await notifications.send_status_update(
            make_booking(status="Completed"), Tour(title="Desert Safari"), TENANT_CONFIG, "Confirmed"
        )
        assert "from <strong>Confirmed</strong>" in sent[0]["html"]

    async def test_no_recipient(self, sent):
        booking = make_booking(customer_email=None)
        assert not await notifications.send_booking_confirmation(booking, Tour(title="X"), TENANT_CONFIG)
        assert sent == []

    async def test_admin_alert_needs_address(self, sent, monkeypatch):
        assert not await notifications.send_admin_booking_alert(make_booking(), Tour(title="X"), TENANT_CONFIG)

        monkeypatch.setattr(get_settings(), "admin_notification_email", "ops@example.com")
        assert await notifications.send_admin_booking_alert(make_booking(), Tour(title="X"), TENANT_CONFIG)
        assert sent[0]["to"] == "ops@example.com"

    async def test_brand_colour_is_escaped(self, sent):
        config = {**TENANT_CONFIG, "branding": {"primaryColor": 'red" onload="alert(1)'}}
        await notifications.send_booking_confirmation(make_booking(), Tour(title="X"), config)

        html = sent[0]["html"]
        assert 'color: red&quot; onload=&quot;alert(1);' in html
        assert 'red" onload' not in html


class TestMailgunDelivery:
    @pytest.fixture
    def mailgun(self, monkeypatch):
        settings = get_settings()
        monkeypatch.setattr(settings, "mailgun_api_key", "key-test")
        monkeypatch.setattr(settings, "mailgun_domain", "mg.example.com")
        monkeypatch.setattr(settings, "mailgun_from_email", "bookings@example.com")

        requests = []
        status = {"code": 200}

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(status["code"], json={"id": "<msg@mg.example.com>"})

        def client_factory(*args, **kwargs):
            return REAL_ASYNC_CLIENT(*args, transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(emailer.httpx, "AsyncClient", client_factory)
        return requests, status

    async def test_unconfigured_is_skipped(self):
        assert await emailer.send_email("a@example.com", "Hi", "<p>Hi</p>") is False

    async def test_posts_form_to_mailgun(self, mailgun):
        requests, _ = mailgun
        assert await emailer.send_email("a@example.com", "Hi", "<p>Hi</p>", from_name="Luxor Tours")

        (request,) = requests
        assert str(request.url) == "https://api.mailgun.net/v3/mg.example.com/messages"
        body = request.content.decode()
        assert "from=Luxor+Tours+%3Cbookings%40example.com%3E" in body
        assert request.headers["Authorization"].startswith("Basic ")

    async def test_http_failure_does_not_raise(self, mailgun):
        _, status = mailgun
        status["code"] = 502
        delivered = await notifications.send_booking_confirmation(make_booking(), Tour(title="X"), TENANT_CONFIG)
        assert delivered is False
