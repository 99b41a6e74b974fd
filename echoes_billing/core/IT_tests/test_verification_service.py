from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from echoes_billing.core.models.entitlement_models import EntitlementRecord
from echoes_billing.core.service.purchase_verification.models import (
    PurchaseVerificationRequest,
    VerificationResult,
)
from echoes_billing.core.service.purchase_verification.verification_service import VerificationService
from echoes_billing.core.service.supabase_connectors.entitlement_record_client import InMemoryEntitlementRecordStore

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
EXPIRY = datetime(2027, 1, 1, tzinfo=timezone.utc)
YEARLY = "com.thequietframe.echoes.yearly"


def ios_request(transaction_id="1000000123"):
    return PurchaseVerificationRequest(platform="ios", sku=YEARLY, transactionId=transaction_id)


def android_request(token="token-1", package_name="com.thequietframe.echoes"):
    return PurchaseVerificationRequest(
        platform="android", sku=YEARLY, purchaseToken=token, packageName=package_name, productId=YEARLY
    )


def make_service(apple_result=None, google_result=None):
    apple = AsyncMock()
    apple.verify_transaction.return_value = apple_result
    apple.get_subscription_status.return_value = apple_result
    google = AsyncMock()
    google.verify_subscription.return_value = google_result
    google.acknowledge_purchase.return_value = True
    store = InMemoryEntitlementRecordStore()
    return VerificationService(store, apple, google, package_name="com.thequietframe.echoes"), store, apple, google


def entitled(source="apple", **kwargs):
    return VerificationResult(valid=True, entitled=True, source=source, product_id=YEARLY, expires_at=EXPIRY, **kwargs)


class TestVerifyPurchase:
    """Test suite for server-side purchase verification."""

    @pytest.mark.asyncio
    async def test_entitled_purchase_creates_one_record(self):
        service, store, apple, _ = make_service(entitled())

        response = await service.verify_purchase("install-1", ios_request(), now=NOW)
        await service.verify_purchase("install-1", ios_request(), now=NOW + timedelta(hours=1))

        assert response.entitlement == "full"
        assert response.expires_at == "2027-01-01T00:00:00Z"
        assert len(store) == 1
        record = store.get("install-1")
        assert record.created_at == NOW
        assert record.last_verified_at == NOW + timedelta(hours=1)
        apple.verify_transaction.assert_awaited_with("1000000123")

    @pytest.mark.asyncio
    async def test_refund_downgrades_record(self):
        """Test that a refunded transaction revokes the record it granted."""
        service, store, apple, _ = make_service(entitled())
        await service.verify_purchase("install-1", ios_request(), now=NOW)

        apple.verify_transaction.return_value = VerificationResult(
            valid=True, entitled=False, source="apple", error="refunded"
        )
        response = await service.verify_purchase("install-1", ios_request(), now=NOW)

        assert response.entitlement == "free"
        assert response.error == "refunded"
        assert store.get("install-1").entitlement == "free"

    @pytest.mark.asyncio
    async def test_stale_purchase_does_not_downgrade_other_active_record(self):
        service, store, apple, _ = make_service(entitled())
        await service.verify_purchase("install-1", ios_request("current"), now=NOW)

        apple.verify_transaction.return_value = VerificationResult(
            valid=True, entitled=False, source="apple", error="expired"
        )
        await service.verify_purchase("install-1", ios_request("older"), now=NOW)

        assert store.get("install-1").entitlement == "full"

    @pytest.mark.asyncio
    async def test_unverifiable_leaves_record_untouched(self):
        service, store, apple, _ = make_service(entitled())
        await service.verify_purchase("install-1", ios_request(), now=NOW)

        apple.verify_transaction.return_value = VerificationResult(
            valid=False, entitled=False, source="apple", error="Timeout"
        )
        response = await service.verify_purchase("install-1", ios_request(), now=NOW)

        assert response.entitlement == "free"
        assert response.error == "Timeout"
        assert store.get("install-1").entitlement == "full"

    @pytest.mark.asyncio
    async def test_missing_apple_credentials(self):
        service = VerificationService(InMemoryEntitlementRecordStore())
        response = await service.verify_purchase("install-1", ios_request(), now=NOW)
        assert response.entitlement == "free"
        assert response.error == "Apple credentials not configured"

    @pytest.mark.asyncio
    async def test_android_acknowledges_pending_purchase(self):
        service, store, _, google = make_service(google_result=entitled("google", needs_acknowledgement=True))

        response = await service.verify_purchase("install-1", android_request(), now=NOW)

        assert response.entitlement == "full"
        google.verify_subscription.assert_awaited_once_with(YEARLY, "token-1")
        google.acknowledge_purchase.assert_awaited_once_with(YEARLY, "token-1")
        assert store.get("install-1").purchase_token == "token-1"

    @pytest.mark.asyncio
    async def test_android_package_mismatch(self):
        service, store, _, google = make_service(google_result=entitled("google"))

        response = await service.verify_purchase("install-1", android_request(package_name="com.other.app"), now=NOW)

        assert response.entitlement == "free"
        assert response.error == "Package name mismatch"
        google.verify_subscription.assert_not_awaited()
        assert len(store) == 0


class TestStatus:
    """Test suite for entitlement status answers."""

    def test_unknown_install_is_free(self):
        service, _, _, _ = make_service()
        assert service.get_status("nobody", now=NOW).entitlement == "free"

    def test_expired_full_record_reads_free(self):
        service, store, _, _ = make_service()
        store.upsert(EntitlementRecord(install_id="install-1", entitlement="full", expires_at=NOW - timedelta(days=1)))

        response = service.get_status("install-1", now=NOW)

        assert response.entitlement == "free"
        assert response.expires_at == "2026-05-31T00:00:00Z"

    def test_legacy_pro_record_reads_full(self):
        service, store, _, _ = make_service()
        store.upsert(EntitlementRecord.model_construct(
            install_id="install-1", entitlement="pro", expires_at=EXPIRY))

        assert service.get_status("install-1", now=NOW).entitlement == "full"


class TestReverifyExpired:
    """Test suite for the expired record re-verification job."""

    @pytest.mark.asyncio
    async def test_renewed_and_reverted(self):
        service, store, apple, google = make_service(
            apple_result=entitled(),
            google_result=VerificationResult(valid=True, entitled=False, source="google", error="expired"),
        )
        past = NOW - timedelta(days=1)
        store.upsert(EntitlementRecord(install_id="ios-1", entitlement="full", platform="ios",
                                       sku=YEARLY, transaction_id="1000000123", expires_at=past))
        store.upsert(EntitlementRecord(install_id="android-1", entitlement="full", platform="android",
                                       sku=YEARLY, purchase_token="token-1", expires_at=past))
        store.upsert(EntitlementRecord(install_id="active", entitlement="full", platform="ios",
                                       expires_at=EXPIRY))

        response = await service.reverify_expired(now=NOW)

        assert response.total_checked == 2
        assert response.renewed == 1
        assert response.reverted_to_free == 1
        assert response.errors == 0
        assert store.get("ios-1").expires_at == EXPIRY
        assert store.get("android-1").entitlement == "free"
        apple.get_subscription_status.assert_awaited_once_with("1000000123")
        google.verify_subscription.assert_awaited_once_with(YEARLY, "token-1")

    @pytest.mark.asyncio
    async def test_unanswered_record_is_an_error(self):
        service, store, apple, _ = make_service(
            apple_result=VerificationResult(valid=False, entitled=False, source="apple", error="Timeout"))
        store.upsert(EntitlementRecord(install_id="ios-1", entitlement="full", platform="ios",
                                       transaction_id="1", expires_at=NOW - timedelta(days=1)))

        response = await service.reverify_expired(now=NOW)

        assert response.errors == 1
        assert store.get("ios-1").entitlement == "full"
