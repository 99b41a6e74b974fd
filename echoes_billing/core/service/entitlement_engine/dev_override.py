"""
Development-only access override, and the engine factory.

The factory picks the engine once: development builds get DevOverrideEngine,
which never touches the store and only reaches the backend when the
dev-backend flag is set. Production builds get EntitlementEngine and have no
path to the override.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import logfire
from pydantic import BaseModel

from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.models.entitlement_models import DevAccessState, EntitlementState
from echoes_billing.core.service.entitlement_engine.access_cache import AccessCacheStore
from echoes_billing.core.service.entitlement_engine.billing_api_client import (
    BackendUnavailableError,
    BillingApiClient,
)
from echoes_billing.core.service.entitlement_engine.engine import EntitlementEngine, EntitlementStateHolder
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.session_manager import SessionManager
from echoes_billing.core.service.entitlement_engine.storage import JsonFileKeyValueStore, KeyValueStore
from echoes_billing.core.service.entitlement_engine.store_adapter import BillingSDK, StoreAdapter

DEV_ACCESS_KEY = "@echoes_dev_access_override"

DEV_STATES = ("trial", "paid", "expired")

_NEXT_STATE = {None: "trial", "trial": "paid", "paid": "expired", "expired": None}


class DevEntitlement(BaseModel):
    is_full_access: bool
    expires_at: str
    source: str = "dev-override"


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_entitlement(state: DevAccessState, now: Optional[datetime] = None) -> Optional[DevEntitlement]:
    if state is None:
        return None
    now = now or datetime.now(timezone.utc)
    if state in ("trial", "paid"):
        return DevEntitlement(is_full_access=True, expires_at=_iso(now + timedelta(days=30)))
    if state == "expired":
        return DevEntitlement(is_full_access=False, expires_at=_iso(now - timedelta(hours=24)))
    return None


class DevAccessOverride:
    """Persisted trial/paid/expired switch. Inert unless `available`."""

    def __init__(self, store: KeyValueStore, available: bool):
        self.store = store
        self.available = available

    async def get_override(self) -> DevAccessState:
        if not self.available:
            return None
        try:
            stored = await self.store.get_item(DEV_ACCESS_KEY)
        except Exception as e:
            logfire.warning(f"Error reading dev override: {e}")
            return None
        return stored if stored in DEV_STATES else None

    async def set_override(self, state: DevAccessState) -> None:
        if not self.available:
            logfire.warning("Cannot set dev override outside development builds")
            return
        try:
            if state is None:
                await self.store.delete_item(DEV_ACCESS_KEY)
            else:
                await self.store.set_item(DEV_ACCESS_KEY, state)
            logfire.info("Dev override set", extra={"state": state})
        except Exception as e:
            logfire.error(f"Error setting dev override: {e}")

    async def cycle(self) -> DevAccessState:
        """trial -> paid -> expired -> none -> trial."""
        if not self.available:
            return None
        nxt = _NEXT_STATE.get(await self.get_override())
        await self.set_override(nxt)
        return nxt


class DevOverrideEngine(EntitlementStateHolder):
    """Stands in for EntitlementEngine in development builds, with the same actions."""

    def __init__(
        self,
        override: DevAccessOverride,
        settings: ClientSettings,
        install_identity: Optional[InstallIdentity] = None,
        billing_api: Optional[BillingApiClient] = None,
    ):
        super().__init__(EntitlementState(is_dev_mode=True))
        self.override = override
        self.settings = settings
        self.install_identity = install_identity
        self.billing_api = billing_api

    @property
    def _backend_enabled(self) -> bool:
        return self.settings.DEV_ENABLE_ENTITLEMENT_BACKEND and self.billing_api is not None

    def _apply(self, state: DevAccessState) -> None:
        mapped = to_entitlement(state)
        self._set_state(
            is_full_access=mapped.is_full_access,
            expires_at=mapped.expires_at,
            error=None,
            is_loading=False,
        )

    async def _resolve(self) -> None:
        override = await self.override.get_override()
        self._set_state(dev_override=override)
        if override is not None:
            self._apply(override)
            return

        if not self._backend_enabled:
            self._apply("trial")
            return

        install_id = await self.install_identity.get_install_id()
        try:
            status = await self.billing_api.check_status(install_id)
        except BackendUnavailableError as e:
            logfire.warning(f"Dev backend status failed: {e}")
            self._set_state(is_full_access=False, error="check_failed", is_loading=False)
            return
        self._set_state(
            is_full_access=status.entitlement == "full",
            expires_at=status.expires_at,
            error=None,
            is_loading=False,
        )

    async def initialize(self) -> None:
        await self._resolve()

    async def refresh(self) -> None:
        await self._resolve()

    async def on_app_state_change(self, app_state: str) -> None:
        if app_state == "active":
            await self.refresh()

    async def dev_set_access(self, state: DevAccessState) -> None:
        await self.override.set_override(state)
        self._set_state(dev_override=state)
        self._apply(state or "trial")

    async def purchase_monthly(self, offer_token: Optional[str] = None) -> bool:
        await self.dev_set_access("paid")
        return True

    async def purchase_yearly(self, offer_token: Optional[str] = None) -> bool:
        await self.dev_set_access("paid")
        return True

    async def restore_purchases_action(self) -> bool:
        await self.dev_set_access("paid")
        return True


def create_entitlement_engine(
    settings: ClientSettings,
    sdk: BillingSDK,
    secure_store: Optional[KeyValueStore] = None,
    backup_store: Optional[KeyValueStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
):
    """Wire up the engine for this build. Call once at app start."""
    secure_store = secure_store or JsonFileKeyValueStore(settings.STORAGE_PATH)
    install_identity = InstallIdentity(secure_store, backup_store, platform=settings.PLATFORM)

    owns_client = http_client is None
    if owns_client:
        http_client = httpx.AsyncClient(base_url=settings.API_BASE, timeout=settings.REQUEST_TIMEOUT_SECONDS)
    session_manager = SessionManager(install_identity, secure_store, http_client, settings)
    billing_api = BillingApiClient(session_manager, http_client, settings)

    if settings.DEV_MODE:
        engine = DevOverrideEngine(
            DevAccessOverride(backup_store or secure_store, available=True),
            settings,
            install_identity=install_identity,
            billing_api=billing_api,
        )
    else:
        engine = EntitlementEngine(
            install_identity,
            billing_api,
            StoreAdapter(sdk, settings),
            AccessCacheStore(backup_store or secure_store, install_identity),
            settings,
        )

    if owns_client:
        engine.add_closer(http_client.aclose)
    logfire.info("Entitlement engine created", extra={"dev_mode": settings.DEV_MODE, "platform": settings.PLATFORM})
    return engine
