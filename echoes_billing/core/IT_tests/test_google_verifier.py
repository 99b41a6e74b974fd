from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from echoes_billing.core.service.purchase_verification.google_verifier import (
    GooglePlayVerifier,
    classify_subscription_v1,
    classify_subscription_v2,
    parse_rfc3339,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
PACKAGE = "com.thequietframe.echoes"


def millis(value: datetime) -> str:
    return str(int(value.timestamp() * 1000))


def make_verifier(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    verifier = GooglePlayVerifier({"client_email": "sa@example.com", "private_key": "unused"}, PACKAGE,
                                  http_client=client)
    verifier.get_access_token = AsyncMock(return_value="google-access-token")
    return verifier


class TestClassify:
    """Test suite for Google subscription classification."""

    def test_cancel_reason_does_not_revoke_early(self):
        """Test that a cancelled subscription keeps access until expiry."""
        purchase = {"expiryTimeMillis": millis(NOW + timedelta(days=10)), "cancelReason": 0}
        result = classify_subscription_v1(purchase, "monthly", "token", now=NOW)
        assert result.entitled is True
        assert result.error is None

    def test_v1_expired(self):
        purchase = {"expiryTimeMillis": millis(NOW - timedelta(minutes=1))}
        assert classify_subscription_v1(purchase, "monthly", "token", now=NOW).entitled is False

    def test_v1_missing_expiry_is_invalid(self):
        assert classify_subscription_v1({}, "monthly", "token", now=NOW).valid is False

    def test_v1_flags(self):
        purchase = {"expiryTimeMillis": millis(NOW + timedelta(days=1)), "purchaseType": 0, "acknowledgementState": 0}
        result = classify_subscription_v1(purchase, "monthly", "token", now=NOW)
        assert result.environment == "test"
        assert result.needs_acknowledgement is True

    @pytest.mark.parametrize("state,entitled", [
        ("SUBSCRIPTION_STATE_ACTIVE", True),
        ("SUBSCRIPTION_STATE_IN_GRACE_PERIOD", True),
        ("SUBSCRIPTION_STATE_ON_HOLD", False),
        ("SUBSCRIPTION_STATE_EXPIRED", False),
    ])
    def test_v2_states(self, state, entitled):
        purchase = {
            "subscriptionState": state,
            "lineItems": [{"productId": "yearly", "expiryTime": "2027-01-01T00:00:00.123456789Z"}],
        }
        result = classify_subscription_v2(purchase, "token")
        assert result.entitled is entitled
        assert result.product_id == "yearly"
        assert result.expires_at == datetime(2027, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)

    def test_parse_rfc3339_without_fraction(self):
        assert parse_rfc3339("2027-01-01T00:00:00Z") == datetime(2027, 1, 1, tzinfo=timezone.utc)


class TestGooglePlayVerifier:
    """Test suite for Google Play Developer API calls."""

    @pytest.mark.asyncio
    async def test_v2_first(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            assert request.headers["Authorization"] == "Bearer google-access-token"
            return httpx.Response(200, json={
                "subscriptionState": "SUBSCRIPTION_STATE_ACTIVE",
                "lineItems": [{"productId": "com.thequietframe.echoes.yearly", "expiryTime": "2027-01-01T00:00:00Z"}],
            })

        result = await make_verifier(handler).verify_subscription("com.thequietframe.echoes.yearly", "token-1")

        assert result.entitled is True
        assert paths == [f"/androidpublisher/v3/applications/{PACKAGE}/purchases/subscriptionsv2/tokens/token-1"]

    @pytest.mark.asyncio
    async def test_falls_back_to_v1(self):
        """Test that a failing v2 lookup is retried on the v1 endpoint."""
        future = millis(datetime.now(timezone.utc) + timedelta(days=20))
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if "subscriptionsv2" in request.url.path:
                return httpx.Response(404, json={})
            return httpx.Response(200, json={"expiryTimeMillis": future, "cancelReason": 1})

        result = await make_verifier(handler).verify_subscription("monthly", "token-1")

        assert result.entitled is True
        assert result.product_id == "monthly"
        assert paths[1] == f"/androidpublisher/v3/applications/{PACKAGE}/purchases/subscriptions/monthly/tokens/token-1"

    @pytest.mark.asyncio
    async def test_both_endpoints_failing(self):
        result = await make_verifier(lambda r: httpx.Response(403, json={})).verify_subscription("monthly", "t")
        assert result.valid is False
        assert result.error.startswith("Authentication failed")

    @pytest.mark.asyncio
    async def test_token_error_never_raises(self):
        verifier = make_verifier(lambda r: httpx.Response(200, json={}))
        verifier.get_access_token = AsyncMock(side_effect=ValueError("Invalid service account JSON"))

        result = await verifier.verify_subscription("monthly", "t")

        assert result.valid is False
        assert result.error == "Invalid service account JSON"

    @pytest.mark.asyncio
    async def test_acknowledge(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        assert await make_verifier(handler).acknowledge_purchase("monthly", "token-1") is True
        assert requests[0].method == "POST"
        assert requests[0].url.path.endswith("/subscriptions/monthly/tokens/token-1:acknowledge")

    @pytest.mark.asyncio
    async def test_access_token_refresh(self):
        """Test that expired credentials are refreshed before use."""
        credentials = MagicMock()
        credentials.valid = False
        credentials.token = "fresh-token"
        credentials.refresh = lambda request: None
        verifier = GooglePlayVerifier('{"client_email": "sa@example.com", "private_key": "k"}', PACKAGE)

        with patch(
            "echoes_billing.core.service.purchase_verification.google_verifier"
            ".service_account.Credentials.from_service_account_info",
            return_value=credentials,
        ) as from_info:
            assert await verifier.get_access_token() == "fresh-token"

        from_info.assert_called_once()
