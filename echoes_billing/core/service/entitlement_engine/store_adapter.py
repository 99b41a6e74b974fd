"""
Wrapper around the native billing SDK (StoreKit / Play Billing binding).

The adapter owns the connection, normalizes whatever the SDK hands back into
`Purchase` objects and converts every SDK failure into a structured result.
Nothing raised by the SDK leaves this module.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.models.entitlement_models import Purchase, PurchaseResult
from echoes_billing.core.service.entitlement_engine.flow_log import flow_log, generate_flow_id

Teardown = Callable[[], Awaitable[None]]
PurchaseCallback = Callable[[Purchase], Awaitable[None]]
PurchaseErrorCallback = Callable[["StoreError"], Awaitable[None]]

CANCELLED_CODES = ("E_USER_CANCELLED", "user-cancelled")
ALREADY_OWNED_CODES = ("E_ALREADY_OWNED", "already-owned")

RESTORE_HISTORY_LIMIT = 10


class StoreError(Exception):
    """Error reported by the billing SDK, with its platform error code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    @property
    def is_cancelled(self) -> bool:
        return self.code in CANCELLED_CODES

    @property
    def is_already_owned(self) -> bool:
        return self.code in ALREADY_OWNED_CODES or "already owned" in str(self).lower()


def as_store_error(error: Exception) -> StoreError:
    if isinstance(error, StoreError):
        return error
    return StoreError(str(error) or error.__class__.__name__, getattr(error, "code", None))


class SDKSubscription(Protocol):
    def remove(self) -> None: ...


class BillingSDK(Protocol):
    """
    Primitives the native binding exposes. Purchases and products are passed
    through as the SDK's own objects (dicts or attribute objects).
    """

    async def init_connection(self) -> bool: ...

    async def end_connection(self) -> None: ...

    async def fetch_products(self, skus: Sequence[str]) -> List[Any]: ...

    async def request_purchase(self, sku: str, offer_token: Optional[str] = None) -> Any: ...

    async def get_available_purchases(self) -> List[Any]: ...

    async def get_active_subscriptions(self, skus: Sequence[str]) -> List[Any]: ...

    async def current_entitlement_ios(self, sku: str) -> Any: ...

    async def finish_transaction(self, purchase: Any, is_consumable: bool = False) -> None: ...

    def add_purchase_updated_listener(self, callback: Callable[[Any], Awaitable[None]]) -> SDKSubscription: ...

    def add_purchase_error_listener(self, callback: Callable[[Any], Awaitable[None]]) -> SDKSubscription: ...


class PurchaseFieldMap(BaseModel):
    """
    Candidate SDK keys for each normalized purchase field, highest priority
    first. Tagged with the SDK version whose payloads it was written against.
    """
    model_config = ConfigDict(frozen=True)

    sdk_version: str
    product_id: tuple[str, ...]
    # Current transaction ids before the original one of the renewal chain
    transaction_id: tuple[str, ...]
    purchase_token: tuple[str, ...]
    transaction_receipt: tuple[str, ...]


TRANSACTION_ID_FIELDS = ("transactionId", "latestTransactionId", "id", "originalTransactionIdIOS")

DEFAULT_FIELD_MAP = PurchaseFieldMap(
    sdk_version="expo-iap-2",
    product_id=("productId", "sku"),
    transaction_id=TRANSACTION_ID_FIELDS,
    purchase_token=("purchaseToken", "purchaseTokenAndroid"),
    transaction_receipt=("transactionReceipt",),
)


def _field(raw: Any, key: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(key)
    return getattr(raw, key, None)


def pick_field(raw: Any, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = _field(raw, key)
        if value not in (None, ""):
            return str(value)
    return None


def normalize_purchase(
    raw: Any,
    field_map: PurchaseFieldMap = DEFAULT_FIELD_MAP,
    default_product_id: Optional[str] = None,
) -> Optional[Purchase]:
    """Map a raw SDK purchase to a Purchase; None when it carries no product id."""
    if raw is None:
        return None
    product_id = pick_field(raw, field_map.product_id) or default_product_id
    if not product_id:
        return None
    return Purchase(
        product_id=product_id,
        transaction_id=pick_field(raw, field_map.transaction_id),
        purchase_token=pick_field(raw, field_map.purchase_token),
        transaction_receipt=pick_field(raw, field_map.transaction_receipt),
        raw=raw,
    )


class ConnectionDiagnostics(BaseModel):
    platform: str
    connected: bool = False
    attempts: int = 0
    last_error: Optional[str] = None


class RestoreAttempt(BaseModel):
    step: str
    count: int = 0
    error: Optional[str] = None


class RestoreDiagnostics(BaseModel):
    flow_id: str
    platform: str
    connected: bool
    started_at: float = Field(default_factory=time.time)
    attempts: List[RestoreAttempt] = Field(default_factory=list)
    result_count: int = 0

    @property
    def failed(self) -> bool:
        """True when the restore mechanism itself broke, as opposed to finding nothing."""
        if not self.connected:
            return True
        return bool(self.attempts) and all(a.error is not None for a in self.attempts)


class Subscription:
    """Handle for a store listener; `remove()` is idempotent."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self.active = True

    def remove(self) -> None:
        if self.active:
            self.active = False
            self._remove()


async def _noop_teardown() -> None:
    return None


class StoreAdapter:
    def __init__(
        self,
        sdk: BillingSDK,
        settings: ClientSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        field_map: PurchaseFieldMap = DEFAULT_FIELD_MAP,
    ):
        self.sdk = sdk
        self.settings = settings
        self.sleep = sleep
        self.field_map = field_map
        self.connected = False
        self._diagnostics = ConnectionDiagnostics(platform=settings.PLATFORM)
        self._subscriptions: List[Subscription] = []
        self.restore_history: List[RestoreDiagnostics] = []

    @property
    def platform(self) -> str:
        return self.settings.PLATFORM

    @property
    def last_restore_diagnostics(self) -> Optional[RestoreDiagnostics]:
        return self.restore_history[-1] if self.restore_history else None

    def connection_diagnostics(self) -> ConnectionDiagnostics:
        return self._diagnostics.model_copy()

    async def init_connection(self) -> Teardown:
        if self.platform == "web":
            flow_log("INIT", "info", "Skipping store connection on web")
            return _noop_teardown

        attempts = max(1, self.settings.STORE_CONNECT_ATTEMPTS)
        delay = self.settings.STORE_CONNECT_BASE_DELAY_SECONDS
        for attempt in range(1, attempts + 1):
            self._diagnostics.attempts = attempt
            try:
                if await self.sdk.init_connection():
                    self.connected = True
                    self._diagnostics.connected = True
                    self._diagnostics.last_error = None
                    flow_log("INIT", "info", "Store connected", {"attempt": attempt})
                    return self.end_connection
                self._diagnostics.last_error = "init_connection returned false"
            except Exception as e:
                self._diagnostics.last_error = str(e) or e.__class__.__name__
            flow_log("INIT", "warning", "Store connection attempt failed",
                     {"attempt": attempt, "error": self._diagnostics.last_error})
            if attempt < attempts:
                await self.sleep(delay)
                delay *= 2

        flow_log("INIT", "error", "Store connection failed", {"attempts": attempts})
        return _noop_teardown

    async def end_connection(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.remove()
        self._subscriptions.clear()
        if not self.connected:
            return
        try:
            await self.sdk.end_connection()
        except Exception as e:
            flow_log("INIT", "error", "Error ending store connection", {"error": str(e)})
        self.connected = False
        self._diagnostics.connected = False

    async def get_products(self) -> List[Any]:
        if self.platform == "web" or not self.connected:
            flow_log("INIT", "info", "Cannot get products, store not connected")
            return []
        try:
            products = await self.sdk.fetch_products(self.settings.subscription_skus)
        except Exception as e:
            flow_log("INIT", "error", "Error fetching products", {"error": str(e)})
            return []
        flow_log("INIT", "info", "Fetched products", {"count": len(products or [])})
        return list(products or [])

    async def purchase_subscription(
        self,
        sku: str,
        offer_token: Optional[str] = None,
        flow_id: Optional[str] = None,
    ) -> PurchaseResult:
        if self.platform == "web" or not self.connected:
            return PurchaseResult(success=False, error="store_unavailable")

        flow_log("PURCHASE", "info", "Requesting purchase", {"sku": sku}, flow_id)
        try:
            raw = await self.sdk.request_purchase(sku, offer_token)
        except Exception as e:
            error = as_store_error(e)
            if error.is_cancelled:
                flow_log("PURCHASE", "info", "Purchase cancelled by user", {"sku": sku}, flow_id)
                return PurchaseResult(success=False, error="purchase_cancelled", cancelled=True)
            code = "already_owned" if error.is_already_owned else "purchase_failed"
            flow_log("PURCHASE", "error", "Purchase failed",
                     {"sku": sku, "code": error.code, "error": str(error)}, flow_id)
            return PurchaseResult(success=False, error=code, detail=str(error))

        if isinstance(raw, list):
            raw = raw[0] if raw else None
        purchase = normalize_purchase(raw, self.field_map, default_product_id=sku)
        if purchase is None:
            # Android can deliver the purchase only through the update listener
            flow_log("PURCHASE", "warning", "Purchase returned no payload", {"sku": sku}, flow_id)
            return PurchaseResult(success=True)

        flow_log("PURCHASE", "info", "Purchase returned", {
            "product_id": purchase.product_id,
            "has_transaction_id": purchase.transaction_id is not None,
            "has_purchase_token": purchase.purchase_token is not None,
        }, flow_id)
        return PurchaseResult(success=True, purchase=purchase)

    def _normalize_all(self, raws: Optional[List[Any]], default_product_id: Optional[str] = None) -> List[Purchase]:
        purchases = []
        for raw in raws or []:
            purchase = normalize_purchase(raw, self.field_map, default_product_id)
            if purchase is not None:
                purchases.append(purchase)
        return purchases

    async def _attempt(
        self,
        diagnostics: RestoreDiagnostics,
        step: str,
        call: Callable[[], Awaitable[Any]],
        default_product_id: Optional[str] = None,
    ) -> List[Purchase]:
        attempt = RestoreAttempt(step=step)
        diagnostics.attempts.append(attempt)
        try:
            raw = await call()
        except Exception as e:
            attempt.error = str(e) or e.__class__.__name__
            flow_log("RESTORE", "error", f"{step} failed", {"error": attempt.error}, diagnostics.flow_id)
            return []
        raws = raw if isinstance(raw, list) else ([raw] if raw else [])
        purchases = self._normalize_all(raws, default_product_id)
        attempt.count = len(purchases)
        flow_log("RESTORE", "info", f"{step} returned", {"count": attempt.count}, diagnostics.flow_id)
        return purchases

    def _record(self, diagnostics: RestoreDiagnostics) -> None:
        self.restore_history.append(diagnostics)
        del self.restore_history[:-RESTORE_HISTORY_LIMIT]

    async def restore_purchases(self, flow_id: Optional[str] = None) -> List[Purchase]:
        """
        Previously bought purchases, trying in order until one step finds any:
        available purchases, then on iOS active subscriptions, then on iOS the
        current entitlement of each configured SKU.
        """
        diagnostics = RestoreDiagnostics(
            flow_id=flow_id or generate_flow_id(), platform=self.platform, connected=self.connected
        )
        if self.platform == "web" or not self.connected:
            flow_log("RESTORE", "warning", "Cannot restore, store not connected", None, diagnostics.flow_id)
            self._record(diagnostics)
            return []

        purchases = await self._attempt(diagnostics, "available_purchases", self.sdk.get_available_purchases)

        if not purchases and self.platform == "ios":
            skus = self.settings.subscription_skus
            purchases = await self._attempt(
                diagnostics, "active_subscriptions", lambda: self.sdk.get_active_subscriptions(skus)
            )

            if not purchases:
                for sku in skus:
                    purchases = await self._attempt(
                        diagnostics,
                        f"current_entitlement:{sku}",
                        lambda sku=sku: self.sdk.current_entitlement_ios(sku),
                        default_product_id=sku,
                    )
                    if purchases:
                        break

        diagnostics.result_count = len(purchases)
        self._record(diagnostics)
        flow_log("RESTORE", "info", "Restore finished",
                 {"count": len(purchases), "failed": diagnostics.failed}, diagnostics.flow_id)
        return purchases

    async def finish_transaction(self, purchase: Purchase, flow_id: Optional[str] = None) -> bool:
        try:
            await self.sdk.finish_transaction(purchase.raw if purchase.raw is not None else purchase, False)
        except Exception as e:
            flow_log("RESULT", "error", "Error finishing transaction",
                     {"product_id": purchase.product_id, "error": str(e)}, flow_id)
            return False
        flow_log("RESULT", "info", "Transaction finished", {"product_id": purchase.product_id}, flow_id)
        return True

    def get_purchase_payload(self, purchase: Purchase) -> Dict[str, Any]:
        """Body for POST /billing/verify."""
        if self.platform == "ios":
            payload = {
                "platform": "ios",
                "sku": purchase.product_id,
                "transactionId": purchase.transaction_id,
            }
            if purchase.transaction_receipt:
                payload["transactionReceipt"] = purchase.transaction_receipt
            return payload
        return {
            "platform": "android",
            "sku": purchase.product_id,
            "purchaseToken": purchase.purchase_token,
            "packageName": self.settings.ANDROID_PACKAGE_NAME,
            "productId": purchase.product_id,
        }

    def _track(self, sdk_subscription: SDKSubscription) -> Subscription:
        def remove():
            sdk_subscription.remove()
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        subscription = Subscription(remove)
        self._subscriptions.append(subscription)
        return subscription

    def add_purchase_listener(self, callback: PurchaseCallback) -> Subscription:
        async def on_update(raw: Any) -> None:
            purchase = normalize_purchase(raw, self.field_map)
            if purchase is None:
                flow_log("LISTENER", "warning", "Ignoring pushed purchase without product id")
                return
            await callback(purchase)

        return self._track(self.sdk.add_purchase_updated_listener(on_update))

    def add_purchase_error_listener(self, callback: PurchaseErrorCallback) -> Subscription:
        async def on_error(raw: Any) -> None:
            if isinstance(raw, Exception):
                error = as_store_error(raw)
            else:
                error = StoreError(_field(raw, "message") or "Purchase failed", _field(raw, "code"))
            await callback(error)

        return self._track(self.sdk.add_purchase_error_listener(on_error))
