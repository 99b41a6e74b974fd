"""
Entitlement reconciliation engine.

Decides whether this install has full access by combining the billing
backend (authoritative), the store adapter (purchase and restore flows) and
the access cache (grace while the backend is unreachable). The UI layer
reads `state` and subscribes to snapshots; it never sees an exception.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.models.entitlement_models import (
    EntitlementState,
    Purchase,
    StatusResult,
)
from echoes_billing.core.service.entitlement_engine.access_cache import AccessCacheStore
from echoes_billing.core.service.entitlement_engine.billing_api_client import (
    BackendUnavailableError,
    BillingApiClient,
)
from echoes_billing.core.service.entitlement_engine.flow_log import flow_log, generate_flow_id
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.store_adapter import (
    StoreAdapter,
    StoreError,
    Subscription,
    Teardown,
)

StateListener = Callable[[EntitlementState], None]

# A 'free' status this soon after a verified purchase is treated as replica lag
VERIFICATION_PROTECTION_SECONDS = 10.0


class EntitlementStateHolder:
    """Owns the current EntitlementState and notifies subscribers of every change."""

    def __init__(self, initial: EntitlementState):
        self._state = initial
        self._listeners: List[StateListener] = []
        self._closers: List[Callable[[], Awaitable[None]]] = []

    @property
    def state(self) -> EntitlementState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            listener(self._state)

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        """Register a resource to release on close()."""
        self._closers.append(closer)

    async def close(self) -> None:
        closers, self._closers = self._closers, []
        for closer in reversed(closers):
            await closer()
        self._listeners.clear()


class EntitlementEngine(EntitlementStateHolder):
    def __init__(
        self,
        install_identity: InstallIdentity,
        billing_api: BillingApiClient,
        store_adapter: StoreAdapter,
        access_cache: AccessCacheStore,
        settings: ClientSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(EntitlementState())
        self.install_identity = install_identity
        self.billing_api = billing_api
        self.store_adapter = store_adapter
        self.access_cache = access_cache
        self.settings = settings
        self.clock = clock

        self.install_id: Optional[str] = None
        self._pending_status: Optional[asyncio.Task] = None
        self._pending_refresh: Optional[asyncio.Task] = None
        self._pending_auto_restore: Optional[asyncio.Task] = None
        self._pending_verifications: Dict[str, asyncio.Task] = {}
        self._finished_keys: Set[str] = set()
        self._last_full_verification: Optional[float] = None
        self._store_teardown: Optional[Teardown] = None
        self._store_subscriptions: List[Subscription] = []

    async def initialize(self) -> None:
        flow_id = generate_flow_id()
        self._set_state(is_loading=True)
        self.install_id = await self.install_identity.get_install_id()
        flow_log("INIT", "info", "Engine initializing", {"install_id": self.install_id}, flow_id)

        try:
            await self._reconcile_status(flow_id)
        finally:
            self._set_state(is_loading=False)

        await self._init_store(flow_id)

    async def _init_store(self, flow_id: str) -> None:
        if self.settings.PLATFORM == "web":
            return
        try:
            self._store_teardown = await self.store_adapter.init_connection()
            products = await self.store_adapter.get_products()
            self._set_state(products=tuple(products))
            self._store_subscriptions = [
                self.store_adapter.add_purchase_listener(self._on_purchase_updated),
                self.store_adapter.add_purchase_error_listener(self._on_purchase_error),
            ]
        except Exception as e:
            # Purchasing degrades; the entitlement answer above stands
            flow_log("INIT", "error", "Store init failed", {"error": str(e)}, flow_id)

    def _shared(self, attr: str, factory: Callable[[], Awaitable]) -> Awaitable:
        """Join the task stored in `attr`, or start one that clears itself when done."""
        task = getattr(self, attr)
        if task is None:
            task = asyncio.ensure_future(factory())

            def clear(done: asyncio.Task) -> None:
                if getattr(self, attr) is done:
                    setattr(self, attr, None)

            task.add_done_callback(clear)
            setattr(self, attr, task)
        return asyncio.shield(task)

    async def _check_status(self) -> StatusResult:
        install_id = self.install_id
        return await self._shared("_pending_status", lambda: self.billing_api.check_status(install_id))

    def _within_protection_window(self) -> bool:
        if self._last_full_verification is None:
            return False
        return self.clock() - self._last_full_verification < VERIFICATION_PROTECTION_SECONDS

    async def _reconcile_status(self, flow_id: str) -> None:
        try:
            status = await self._check_status()
        except BackendUnavailableError as e:
            flow_log("STATUS", "warning", "Backend unavailable", {"error": str(e)}, flow_id)
            await self._apply_grace(flow_id)
            return

        has_access = status.entitlement == "full"
        if not has_access and self._within_protection_window():
            flow_log("STATUS", "info", "Ignoring stale free status after recent verification", None, flow_id)
            return

        self._set_state(
            is_full_access=has_access,
            expires_at=status.expires_at,
            error=None,
            is_grace=False,
            grace_reason="none",
        )
        await self.access_cache.set_access_cache(status.entitlement, status.expires_at)
        flow_log("STATUS", "info", "Status from backend",
                 {"entitlement": status.entitlement, "expires_at": status.expires_at}, flow_id)

    async def _apply_grace(self, flow_id: str) -> None:
        grace = await self.access_cache.check_grace_eligibility()
        if grace.should_grant_grace:
            self._set_state(is_full_access=True, is_grace=True, grace_reason=grace.reason, error=None)
            flow_log("STATUS", "info", "Granting grace access",
                     {"reason": grace.reason, "hours_remaining": grace.hours_remaining}, flow_id)
        else:
            self._set_state(is_full_access=False, is_grace=False, grace_reason="none", error="check_failed")
            flow_log("STATUS", "info", "No grace available", None, flow_id)

    async def refresh(self) -> None:
        """Re-ask the backend without toggling the loading flag."""
        if self.install_id is None:
            flow_log("STATUS", "debug", "Not initialized yet, skipping refresh")
            return
        await self._shared("_pending_refresh", lambda: self._reconcile_status(generate_flow_id()))

    async def on_app_state_change(self, app_state: str) -> None:
        if app_state == "active":
            await self.refresh()

    def _apply_verified(self, status: StatusResult) -> bool:
        has_access = status.entitlement == "full"
        if has_access:
            self._last_full_verification = self.clock()
        self._set_state(
            is_full_access=has_access,
            expires_at=status.expires_at,
            is_grace=False,
            grace_reason="none",
        )
        return has_access

    @staticmethod
    def _purchase_key(purchase: Purchase) -> str:
        return purchase.transaction_id or purchase.purchase_token or purchase.product_id

    async def _verify_once(self, purchase: Purchase, flow_id: str) -> Optional[StatusResult]:
        """
        Verify with the backend, then finish the transaction. Concurrent calls
        for the same transaction share one verification. None when the
        backend could not answer; the transaction then stays unfinished so it
        can be verified again later.
        """
        key = self._purchase_key(purchase)
        task = self._pending_verifications.get(key)
        if task is None:
            task = asyncio.ensure_future(self._verify_and_finish(purchase, key, flow_id))
            self._pending_verifications[key] = task
            task.add_done_callback(lambda done: self._pending_verifications.pop(key, None))
        else:
            flow_log("VERIFY", "debug", "Joining in-flight verification", {"product_id": purchase.product_id}, flow_id)
        return await asyncio.shield(task)

    async def _verify_and_finish(self, purchase: Purchase, key: str, flow_id: str) -> Optional[StatusResult]:
        payload = self.store_adapter.get_purchase_payload(purchase)
        flow_log("VERIFY", "info", "Verifying purchase", {"sku": payload.get("sku")}, flow_id)
        try:
            status = await self.billing_api.verify_purchase(self.install_id, payload)
        except BackendUnavailableError as e:
            flow_log("VERIFY", "error", "Verification unavailable", {"error": str(e)}, flow_id)
            return None

        if key not in self._finished_keys:
            if await self.store_adapter.finish_transaction(purchase, flow_id):
                self._finished_keys.add(key)

        if status.entitlement == "full":
            await self.access_cache.set_access_cache("full", status.expires_at)
        flow_log("VERIFY", "info", "Verification result",
                 {"entitlement": status.entitlement, "expires_at": status.expires_at}, flow_id)
        return status

    async def purchase_monthly(self, offer_token: Optional[str] = None) -> bool:
        return await self._purchase(self.settings.MONTHLY_SKU, offer_token)

    async def purchase_yearly(self, offer_token: Optional[str] = None) -> bool:
        return await self._purchase(self.settings.YEARLY_SKU, offer_token)

    async def _purchase(self, sku: str, offer_token: Optional[str]) -> bool:
        if self.install_id is None:
            flow_log("PURCHASE", "warning", "No install id available for purchase", {"sku": sku})
            return False

        flow_id = generate_flow_id()
        self._set_state(is_loading=True, error=None)
        try:
            result = await self.store_adapter.purchase_subscription(sku, offer_token, flow_id)
            if not result.success:
                if result.error == "already_owned":
                    return await self._auto_restore()
                self._set_state(error=result.error)
                return False

            if result.purchase is None:
                flow_log("PURCHASE", "info", "Waiting for purchase listener to deliver the purchase", {"sku": sku}, flow_id)
                return False

            status = await self._verify_once(result.purchase, flow_id)
            if status is None:
                self._set_state(error="verification_unavailable")
                return False
            has_access = self._apply_verified(status)
            if not has_access:
                self._set_state(error="verification_failed")
            flow_log("RESULT", "info", "Purchase flow finished", {"sku": sku, "full_access": has_access}, flow_id)
            return has_access
        finally:
            self._set_state(is_loading=False)

    async def _verify_first_entitled(self, purchases: List[Purchase], flow_id: str) -> tuple[bool, bool]:
        """Verify one at a time, stopping at the first full answer. Returns (entitled, any_unavailable)."""
        unavailable = False
        for purchase in purchases:
            status = await self._verify_once(purchase, flow_id)
            if status is None:
                unavailable = True
                continue
            if status.entitlement == "full":
                self._apply_verified(status)
                self._set_state(error=None)
                return True, unavailable
        return False, unavailable

    async def restore_purchases_action(self) -> bool:
        if self.install_id is None:
            flow_log("RESTORE", "warning", "No install id available for restore")
            return False

        flow_id = generate_flow_id()
        self._set_state(is_loading=True, error=None)
        try:
            purchases = await self.store_adapter.restore_purchases(flow_id)
            if not purchases:
                diagnostics = self.store_adapter.last_restore_diagnostics
                error = "restore_failed" if diagnostics is not None and diagnostics.failed else "no_purchases_found"
                self._set_state(error=error)
                flow_log("RESULT", "info", "Restore found nothing", {"error": error}, flow_id)
                return False

            entitled, unavailable = await self._verify_first_entitled(purchases, flow_id)
            if entitled:
                flow_log("RESULT", "info", "Restore succeeded", None, flow_id)
                return True
            self._set_state(error="restore_failed" if unavailable else "no_active_subscription")
            return False
        except Exception as e:
            flow_log("RESTORE", "error", "Restore error", {"error": str(e)}, flow_id)
            self._set_state(error="restore_failed")
            return False
        finally:
            self._set_state(is_loading=False)

    async def _auto_restore(self) -> bool:
        return await self._shared("_pending_auto_restore", self._run_auto_restore)

    async def _run_auto_restore(self) -> bool:
        flow_id = generate_flow_id()
        flow_log("RESTORE", "info", "Already owned, restoring automatically", None, flow_id)
        try:
            purchases = await self.store_adapter.restore_purchases(flow_id)
            if purchases:
                entitled, _ = await self._verify_first_entitled(purchases, flow_id)
                if entitled:
                    return True
        except Exception as e:
            flow_log("RESTORE", "error", "Automatic restore failed", {"error": str(e)}, flow_id)
        self._set_state(error="already_owned_restore_failed")
        return False

    async def _on_purchase_updated(self, purchase: Purchase) -> None:
        flow_id = generate_flow_id()
        if not purchase.transaction_id and not purchase.purchase_token:
            flow_log("LISTENER", "info", "Skipping pushed purchase without transaction id or token",
                     {"product_id": purchase.product_id}, flow_id)
            return
        if self.install_id is None:
            flow_log("LISTENER", "error", "No install id for pushed purchase", None, flow_id)
            return

        flow_log("LISTENER", "info", "Purchase pushed by store", {"product_id": purchase.product_id}, flow_id)
        status = await self._verify_once(purchase, flow_id)
        if status is not None:
            self._apply_verified(status)

    async def _on_purchase_error(self, error: StoreError) -> None:
        if error.is_cancelled:
            return
        if error.is_already_owned:
            await self._auto_restore()
            return
        flow_log("LISTENER", "error", "Store reported purchase error", {"code": error.code, "error": str(error)})
        self._set_state(error="purchase_failed")

    async def close(self) -> None:
        for subscription in self._store_subscriptions:
            subscription.remove()
        self._store_subscriptions = []
        if self._store_teardown is not None:
            await self._store_teardown()
            self._store_teardown = None
        await super().close()
