import json
from datetime import datetime, timedelta, timezone

import pytest

from E2E_tests.mock_service import MockBillingBackend
from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.service.entitlement_engine.billing_api_client import (
    BackendUnavailableError,
    BillingApiClient,
)
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.session_manager import (
    SESSION_EXPIRES_KEY,
    SESSION_TOKEN_KEY,
    SessionManager,
)
from echoes_billing.core.service.entitlement_engine.storage import MemoryKeyValueStore

STATUS = "/api/billing/status"
VERIFY = "/api/billing/verify"
SESSION_START = "/api/session/start"


def make_client(backend):
    expires = datetime.now(timezone.utc) + timedelta(days=10)
    store = MemoryKeyValueStore({SESSION_TOKEN_KEY: "stale-token", SESSION_EXPIRES_KEY: expires.isoformat()})
    settings = ClientSettings(PLATFORM="ios")
    http_client = backend.client()
    manager = SessionManager(InstallIdentity(store, platform="ios"), store, http_client, settings)
    return BillingApiClient(manager, http_client, settings)


class TestBillingApiClient:
    """Test suite for authenticated billing backend calls."""

    @pytest.mark.asyncio
    async def test_status_uses_bearer_session(self):
        """Test that the status call sends the session token and the install id."""
        backend = MockBillingBackend()
        backend.queue(STATUS, 200, {"entitlement": "full", "expiresAt": "2027-01-01T00:00:00Z"})
        client = make_client(backend)

        result = await client.check_status("install-1")

        request = backend.requests_to(STATUS)[0]
        assert request.headers["Authorization"] == "Bearer stale-token"
        assert request.url.params["installId"] == "install-1"
        assert result.entitlement == "full"
        assert result.expires_at == "2027-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_401_then_200_refreshes_once(self):
        """Test that a 401 re-issues the session once and the retried call succeeds."""
        backend = MockBillingBackend()
        backend.queue(STATUS, 401, {"detail": "Invalid or expired session token"})
        backend.queue(STATUS, 200, {"entitlement": "full", "expiresAt": None})
        client = make_client(backend)

        result = await client.check_status("install-1")

        assert result.entitlement == "full"
        assert len(backend.requests_to(SESSION_START)) == 1
        status_requests = backend.requests_to(STATUS)
        assert len(status_requests) == 2
        assert status_requests[1].headers["Authorization"] == "Bearer session-1"

    @pytest.mark.asyncio
    async def test_401_twice_is_backend_unavailable(self):
        """Test that a second 401 surfaces as backend unavailable instead of looping."""
        backend = MockBillingBackend()
        backend.defaults[STATUS] = (401, {"detail": "Invalid or expired session token"})
        client = make_client(backend)

        with pytest.raises(BackendUnavailableError) as exc_info:
            await client.check_status("install-1")

        assert exc_info.value.status_code == 401
        assert len(backend.requests_to(STATUS)) == 2
        assert len(backend.requests_to(SESSION_START)) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_backend_unavailable(self):
        """Test that a 5xx answer is not treated as an entitlement answer."""
        backend = MockBillingBackend()
        backend.queue(STATUS, 503, {"detail": "down"})
        client = make_client(backend)

        with pytest.raises(BackendUnavailableError):
            await client.check_status("install-1")

    @pytest.mark.asyncio
    async def test_network_error_is_backend_unavailable(self):
        """Test that connection failures raise BackendUnavailableError."""
        backend = MockBillingBackend()
        backend.unreachable = True
        client = make_client(backend)

        with pytest.raises(BackendUnavailableError):
            await client.check_status("install-1")

    @pytest.mark.asyncio
    async def test_legacy_pro_is_normalized_to_full(self):
        """Test that the legacy 'pro' answer maps to full access."""
        backend = MockBillingBackend()
        backend.queue(STATUS, 200, {"entitlement": "pro", "expiresAt": None})
        client = make_client(backend)

        assert (await client.check_status("install-1")).entitlement == "full"

    @pytest.mark.asyncio
    async def test_verify_posts_payload_with_install_id(self):
        """Test that verify merges the install id into the platform payload."""
        backend = MockBillingBackend()
        backend.queue(VERIFY, 200, {"entitlement": "full", "expiresAt": "2027-01-01T00:00:00Z"})
        client = make_client(backend)

        result = await client.verify_purchase(
            "install-1", {"platform": "ios", "sku": "com.thequietframe.echoes.monthly", "transactionId": "42"}
        )

        body = json.loads(backend.requests_to(VERIFY)[0].content)
        assert body == {
            "platform": "ios",
            "sku": "com.thequietframe.echoes.monthly",
            "transactionId": "42",
            "installId": "install-1",
        }
        assert result.entitlement == "full"

    @pytest.mark.asyncio
    async def test_non_object_body_is_backend_unavailable(self):
        """Test that a 200 answer that is not a JSON object is not trusted."""
        backend = MockBillingBackend()
        backend.queue(STATUS, 200, ["unexpected"])
        client = make_client(backend)

        with pytest.raises(BackendUnavailableError):
            await client.check_status("install-1")

    @pytest.mark.asyncio
    async def test_wrongly_typed_expiry_is_backend_unavailable(self):
        """Test that an epoch-millis expiresAt is rejected instead of leaking a ValidationError."""
        backend = MockBillingBackend()
        backend.queue(VERIFY, 200, {"entitlement": "full", "expiresAt": 1798761600000})
        client = make_client(backend)

        with pytest.raises(BackendUnavailableError):
            await client.verify_purchase("install-1", {"platform": "ios", "sku": "monthly", "transactionId": "42"})
