from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from echoes_billing.app.api.dependencies import get_verification_service
from echoes_billing.core.config.general_config import settings
from echoes_billing.core.models.entitlement_models import EntitlementRecord
from echoes_billing.core.security.session_auth import SessionAuthVerifier
from echoes_billing.core.service.purchase_verification.models import VerificationResult
from echoes_billing.core.service.purchase_verification.verification_service import VerificationService
from echoes_billing.core.service.supabase_connectors.entitlement_record_client import InMemoryEntitlementRecordStore
from echoes_billing.main import app

INSTALL_ID = "3f1c2a9e-0000-4000-8000-000000000001"


@pytest.fixture
def store():
    return InMemoryEntitlementRecordStore()


@pytest.fixture
def apple():
    verifier = AsyncMock()
    verifier.verify_transaction.return_value = VerificationResult(
        valid=True,
        entitled=True,
        source="apple",
        product_id="com.thequietframe.echoes.yearly",
        expires_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
    )
    return verifier


@pytest.fixture
def client(store, apple):
    app.dependency_overrides[get_verification_service] = lambda: VerificationService(store, apple_verifier=apple)
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(install_id=INSTALL_ID):
    token, _ = SessionAuthVerifier.issue_session_token(install_id, "ios")
    return {"Authorization": f"Bearer {token}"}


class TestSessionEndpoint:
    """Test suite for POST /api/session/start."""

    def test_start_session_issues_usable_token(self, client):
        response = client.post("/api/session/start", json={
            "installId": INSTALL_ID,
            "platform": "ios",
            "appVersion": "1.4.0",
            "deviceTime": "2026-06-01T10:00:00Z",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["expiresAt"].endswith("Z")
        assert SessionAuthVerifier.verify_session_token(body["sessionToken"]) == INSTALL_ID

    def test_short_install_id_is_rejected(self, client):
        response = client.post("/api/session/start", json={"installId": "abc", "platform": "ios"})
        assert response.status_code == 422


class TestStatusEndpoint:
    """Test suite for GET /api/billing/status."""

    def test_requires_session(self, client):
        response = client.get("/api/billing/status", params={"installId": INSTALL_ID})
        assert response.status_code == 401

    def test_rejects_expired_token(self, client):
        token, _ = SessionAuthVerifier.issue_session_token(
            INSTALL_ID, "ios", now=datetime.now(timezone.utc) - timedelta(days=365))
        response = client.get("/api/billing/status", params={"installId": INSTALL_ID},
                              headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_rejects_other_install(self, client):
        """Test that a session can only read its own install's entitlement."""
        response = client.get("/api/billing/status", params={"installId": INSTALL_ID},
                              headers=bearer("someone-elses-install"))
        assert response.status_code == 401

    def test_unknown_install_is_free(self, client):
        response = client.get("/api/billing/status", params={"installId": INSTALL_ID}, headers=bearer())
        assert response.status_code == 200
        assert response.json() == {"entitlement": "free", "expiresAt": None}

    def test_full_record(self, client, store):
        store.upsert(EntitlementRecord(
            install_id=INSTALL_ID, entitlement="full", expires_at=datetime(2099, 1, 1, tzinfo=timezone.utc)))

        response = client.get("/api/billing/status", params={"installId": INSTALL_ID}, headers=bearer())

        assert response.json() == {"entitlement": "full", "expiresAt": "2099-01-01T00:00:00Z"}


class TestVerifyEndpoint:
    """Test suite for POST /api/billing/verify."""

    def test_ios_purchase_is_verified_and_recorded(self, client, store, apple):
        response = client.post("/api/billing/verify", headers=bearer(), json={
            "platform": "ios",
            "sku": "com.thequietframe.echoes.yearly",
            "transactionId": "1000000123",
            "installId": INSTALL_ID,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["entitlement"] == "full"
        assert body["expiresAt"] == "2099-01-01T00:00:00Z"
        assert store.get(INSTALL_ID).transaction_id == "1000000123"
        apple.verify_transaction.assert_awaited_once_with("1000000123")

    def test_ios_without_transaction_id(self, client, apple):
        response = client.post("/api/billing/verify", headers=bearer(), json={
            "platform": "ios", "sku": "com.thequietframe.echoes.yearly",
        })
        assert response.status_code == 400
        apple.verify_transaction.assert_not_awaited()

    def test_android_without_purchase_token(self, client):
        response = client.post("/api/billing/verify", headers=bearer(), json={
            "platform": "android", "sku": "com.thequietframe.echoes.monthly",
        })
        assert response.status_code == 400

    def test_body_install_id_must_match_session(self, client, store):
        response = client.post("/api/billing/verify", headers=bearer(), json={
            "platform": "ios",
            "sku": "com.thequietframe.echoes.yearly",
            "transactionId": "1000000123",
            "installId": "another-install-id",
        })
        assert response.status_code == 401
        assert len(store) == 0


class TestMaintenanceEndpoints:
    """Test suite for admin and health endpoints."""

    def test_reverify_requires_admin_token(self, client):
        response = client.post("/api/billing/reverify-expired", headers=bearer())
        assert response.status_code == 403

    def test_reverify_with_admin_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_TOKEN", "admin-secret")

        response = client.post("/api/billing/reverify-expired", headers={"Authorization": "Bearer admin-secret"})

        assert response.status_code == 200
        assert response.json()["total_checked"] == 0

    def test_health(self, client):
        response = client.get("/api/health/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
