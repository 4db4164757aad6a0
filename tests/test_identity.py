"""Tests for buyer identity resolution and bearer auth"""
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from main import app
from app.auth.security import create_access_token, verify_token
from app.database import get_db
from app.services.identity import (
    GuestIdentity,
    RegisteredIdentity,
    resolve_identity,
    lookup_identity_by_email,
    normalize_email,
)


class TestResolveIdentity:
    def test_authenticated_id(self):
        identity = resolve_identity("buyer@test.com", authenticated_user_id="user_2abc")
        assert identity == RegisteredIdentity(user_id="user_2abc", email="buyer@test.com")
        assert identity.key == "user_2abc"
        assert identity.is_registered

    def test_claimed_id(self):
        identity = resolve_identity("buyer@test.com", claimed_user_id="user_9xyz")
        assert identity.key == "user_9xyz"

    def test_email_shaped_claim_is_guest(self):
        identity = resolve_identity("buyer@test.com", claimed_user_id="buyer@test.com")
        assert isinstance(identity, GuestIdentity)
        assert identity.key == "buyer@test.com"
        assert not identity.is_registered

    def test_no_ids_is_guest(self):
        assert resolve_identity("buyer@test.com") == GuestIdentity(email="buyer@test.com")


class TestLookupIdentityByEmail:
    def test_registered(self, db_session, registered_user):
        identity = lookup_identity_by_email(db_session, " BUYER@test.com ")
        assert identity.key == registered_user.id

    def test_unknown_email_is_guest(self, db_session):
        identity = lookup_identity_by_email(db_session, "nobody@test.com")
        assert identity == GuestIdentity(email="nobody@test.com")


class TestNormalizeEmail:
    def test_lowercases_and_strips(self):
        assert normalize_email("  A@B.Com ") == "a@b.com"

    def test_empty(self):
        assert normalize_email("") is None
        assert normalize_email(None) is None


class TestTokens:
    def test_round_trip(self):
        token = create_access_token({"sub": "user_2abc"})
        payload = verify_token(token)
        assert payload["sub"] == "user_2abc"
        assert payload["type"] == "access"

    def test_expired_token(self):
        token = create_access_token({"sub": "user_2abc"}, expires_delta=timedelta(seconds=-10))
        assert verify_token(token) is None

    def test_wrong_type(self):
        token = create_access_token({"sub": "user_2abc"})
        assert verify_token(token, expected_type="refresh") is None

    def test_garbage(self):
        assert verify_token("not.a.jwt") is None


class TestBearerAuth:
    @pytest.fixture
    def db_client(self, db_session):
        app.dependency_overrides[get_db] = lambda: db_session
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_valid_token_resolves_user(self, db_client, registered_user):
        token = create_access_token({"sub": registered_user.id})

        response = db_client.get(
            "/api/referral",
            params={"action": "code"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "referralCode": None}

    def test_unknown_user_returns_401(self, db_client):
        token = create_access_token({"sub": "user_ghost"})

        response = db_client.get(
            "/api/referral",
            params={"action": "code"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401
