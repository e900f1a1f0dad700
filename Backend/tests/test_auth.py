"""
Token verification, admin authorization rules, tenant row scoping and audit rows.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from sqlalchemy import select

from app import firebase_auth
from app.auth import AUDIT_BOOKING_CANCELLED, assert_tenant_scoped_row, log_audit
from app.core.config import get_settings
from app.core.request_context import RequestContext, require_admin_access
from app.firebase_auth import create_access_token, verify_app_token, verify_token
from app.models import AuditLog

PROJECT_ID = "excursions-test"


def make_ctx(scope="admin", role="operations", permissions=()):
    return RequestContext(
        user_id="admin-1",
        auth_method="app_jwt",
        scope=scope,
        role=role,
        permissions=list(permissions),
    )


class TestAppTokens:
    def test_round_trip_claims(self):
        token = create_access_token(
            "42",
            email="ops@example.com",
            scope="admin",
            role="operations",
            permissions=["manageBookings"],
        )
        claims = verify_token(token)

        assert claims["sub"] == "42"
        assert claims["scope"] == "admin"
        assert claims["permissions"] == ["manageBookings"]

    def test_expired_token(self):
        token = create_access_token("42", expires_minutes=-5)
        with pytest.raises(HTTPException) as exc:
            verify_app_token(token)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Token has expired"
        assert exc.value.headers == {"WWW-Authenticate": "Bearer"}

    def test_wrong_secret(self):
        token = jwt.encode({"sub": "42"}, "some-other-secret", algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            verify_token(token)
        assert exc.value.detail == "Invalid token"

    def test_unsupported_algorithm(self):
        token = jwt.encode({"sub": "42"}, "test-secret-with-enough-length-for-hs512", algorithm="HS512")
        with pytest.raises(HTTPException) as exc:
            verify_token(token)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Unsupported token algorithm: HS512"

    def test_not_a_jwt(self):
        with pytest.raises(HTTPException) as exc:
            verify_token("garbage")
        assert exc.value.status_code == 401


class TestFirebaseTokens:
    @pytest.fixture
    def signing_key(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "firebase_project_id", PROJECT_ID)
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
        jwk.update({"kid": "key-1", "alg": "RS256", "use": "sig"})

        def fake_jwks():
            return {"keys": [jwk]}

        fake_jwks.cache_clear = lambda: None
        monkeypatch.setattr(firebase_auth, "fetch_firebase_jwks", fake_jwks)
        return private_key

    def make_token(self, private_key, kid="key-1", **overrides):
        now = datetime.now(timezone.utc)
        payload = {
            "sub": "firebase-uid-1",
            "email": "traveller@example.com",
            "aud": PROJECT_ID,
            "iss": f"https://securetoken.google.com/{PROJECT_ID}",
            "iat": now,
            "exp": now + timedelta(hours=1),
            "firebase": {"sign_in_provider": "password"},
        }
        payload.update(overrides)
        return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})

    def test_valid_token_is_normalized(self, signing_key):
        claims = verify_token(self.make_token(signing_key))

        assert claims["sub"] == "firebase-uid-1"
        assert claims["scope"] == "customer"
        assert claims["permissions"] == []

    def test_wrong_audience(self, signing_key):
        with pytest.raises(HTTPException) as exc:
            verify_token(self.make_token(signing_key, aud="someone-else"))
        assert exc.value.detail == "Invalid token"

    def test_unknown_kid(self, signing_key):
        with pytest.raises(HTTPException) as exc:
            verify_token(self.make_token(signing_key, kid="rotated"))
        assert exc.value.detail == "No matching key found for kid: rotated"

    def test_rejected_when_not_configured(self, signing_key, monkeypatch):
        monkeypatch.setattr(get_settings(), "firebase_project_id", "")
        with pytest.raises(HTTPException) as exc:
            verify_token(self.make_token(signing_key))
        assert exc.value.detail == "Firebase authentication is not configured"


class TestAdminAccess:
    def test_customer_is_rejected(self):
        with pytest.raises(HTTPException) as exc:
            require_admin_access(make_ctx(scope="customer"))
        assert exc.value.status_code == 403
        assert exc.value.detail == "Admin access required."

    def test_missing_permissions_are_listed(self):
        ctx = make_ctx(permissions=["manageBookings"])
        with pytest.raises(HTTPException) as exc:
            require_admin_access(ctx, ("manageBookings", "manageTours", "manageTenants"))
        assert exc.value.detail == "Access denied. Missing permission: manageTours, manageTenants."

    def test_granted_permissions(self):
        require_admin_access(make_ctx(permissions=["manageTours"]), ("manageTours",))

    def test_super_admin_bypasses_permissions(self):
        ctx = make_ctx(role="super_admin")
        assert ctx.is_super_admin
        require_admin_access(ctx, ("manageTenants", "manageDashboard"))

    def test_unauthenticated_context_is_not_admin(self):
        ctx = RequestContext(user_id="", auth_method="none", is_authenticated=False, scope="admin")
        assert not ctx.is_admin


class TestTenantScopedRow:
    def test_same_tenant_passes(self):
        assert_tenant_scoped_row("hurghada", "hurghada")

    def test_other_tenant_is_forbidden(self):
        with pytest.raises(HTTPException) as exc:
            assert_tenant_scoped_row("luxor", "hurghada", make_ctx())
        assert exc.value.status_code == 403
        assert exc.value.detail == "Access denied. Resource belongs to a different tenant."

    def test_super_admin_crosses_tenants(self):
        assert_tenant_scoped_row("luxor", "hurghada", make_ctx(role="super_admin"))


async def test_log_audit_writes_row(async_session):
    await log_audit(
        async_session,
        actor_user_id="admin-1",
        action=AUDIT_BOOKING_CANCELLED,
        tenant_id="hurghada",
        target_type="booking",
        target_id="b-1",
        metadata={"refundPercentage": 50},
    )

    row = (await async_session.execute(select(AuditLog))).scalar_one()
    assert row.action == "booking.cancelled"
    assert row.tenant_id == "hurghada"
    assert row.extra_data == {"refundPercentage": 50}
