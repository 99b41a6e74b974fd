import json
import time

import pytest

from E2E_tests.decorators_E2E import test_with_mock_service as with_mock_service
from E2E_tests.mock_service import MockBillingBackend, MockBillingSDK
from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.service.entitlement_engine.access_cache import AccessCacheStore
from echoes_billing.core.service.entitlement_engine.billing_api_client import BillingApiClient
from echoes_billing.core.service.entitlement_engine.engine import EntitlementEngine
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.session_manager import SessionManager
from echoes_billing.core.service.entitlement_engine.storage import MemoryKeyValueStore
from echoes_billing.core.service.entitlement_engine.store_adapter import StoreAdapter

YEARLY_SKU = "com.thequietframe.echoes.yearly"


def build_engine(sdk, backend, secure_store, backup_store):
    settings = ClientSettings(PLATFORM="ios", STORE_CONNECT_BASE_DELAY_SECONDS=0)
    http_client = backend.client()
    install_identity = InstallIdentity(secure_store, backup_store, platform="ios")
    session_manager = SessionManager(install_identity, secure_store, http_client, settings)
    engine = EntitlementEngine(
        install_identity,
        BillingApiClient(session_manager, http_client, settings),
        StoreAdapter(sdk, settings),
        AccessCacheStore(backup_store, install_identity),
        settings,
    )
    engine.add_closer(http_client.aclose)
    return engine


@pytest.mark.asyncio
@with_mock_service(MockBillingSDK, MockBillingBackend)
async def test_fresh_install_yearly_purchase(sdk, backend):
    """
    Fresh install, backend says free, user buys the yearly plan and the
    backend confirms it with Apple: access becomes full and is cached.
    """
    backend.timeline = sdk.timeline
    secure_store = MemoryKeyValueStore()
    backup_store = MemoryKeyValueStore({"echoes_install_timestamp": str(int(time.time() * 1000))})
    engine = build_engine(sdk, backend, secure_store, backup_store)

    await engine.initialize()

    assert engine.state.is_full_access is False
    assert engine.state.is_grace is False
    assert engine.state.is_loading is False
    assert len(engine.state.products) == 2

    sdk.purchase_response = {"productId": YEARLY_SKU, "transactionId": "1000000123"}
    backend.queue("/api/billing/verify", 200, {"entitlement": "full", "expiresAt": "2027-01-01T00:00:00Z"})

    assert await engine.purchase_yearly() is True

    verify_request = backend.requests_to("/api/billing/verify")[0]
    body = json.loads(verify_request.content)
    assert body["platform"] == "ios"
    assert body["sku"] == YEARLY_SKU
    assert body["transactionId"] == "1000000123"
    assert body["installId"] == await engine.install_identity.get_install_id()

    # The transaction is finished only after the backend answered
    timeline = sdk.timeline
    assert timeline.index("backend:/api/billing/verify") < timeline.index("sdk:finish_transaction")
    assert len(sdk.finished) == 1

    assert engine.state.is_full_access is True
    assert engine.state.expires_at == "2027-01-01T00:00:00Z"
    assert engine.state.error is None

    cache = await engine.access_cache.get_access_cache()
    assert cache.last_known_access == "full"
    assert cache.expires_at == "2027-01-01T00:00:00Z"

    await engine.close()
    assert sdk.update_listeners == []
    assert sdk.called("end_connection")


@pytest.mark.asyncio
@with_mock_service(MockBillingSDK, MockBillingBackend)
async def test_pushed_purchase_for_same_transaction_finishes_once(sdk, backend):
    """The store listener repeating a purchase the flow already verified must not finish it twice."""
    secure_store = MemoryKeyValueStore()
    backup_store = MemoryKeyValueStore()
    engine = build_engine(sdk, backend, secure_store, backup_store)
    await engine.initialize()

    raw = {"productId": YEARLY_SKU, "transactionId": "1000000123"}
    sdk.purchase_response = raw
    backend.defaults["/api/billing/verify"] = (200, {"entitlement": "full", "expiresAt": "2027-01-01T00:00:00Z"})

    assert await engine.purchase_yearly() is True
    await sdk.push_purchase(raw)

    assert len(sdk.finished) == 1
    assert engine.state.is_full_access is True
    await engine.close()
