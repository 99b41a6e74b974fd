"""
Anonymous, stable per-install identifier.
"""
import time
import uuid
from typing import Callable, Optional

import logfire

from echoes_billing.core.service.entitlement_engine.storage import KeyValueStore

INSTALL_ID_KEY = "echoes_install_id"
BACKUP_INSTALL_ID_KEY = "@echoes_install_id_backup"
INSTALL_TIMESTAMP_KEY = "echoes_install_timestamp"


class InstallIdentity:
    """
    Owns the install id and the install timestamp.

    The id lives in the secure store. On iOS it is mirrored into a second,
    non-keychain store because keychain reads occasionally fail or come back
    empty after OS updates; a hit in the backup is copied back to the secure
    store. Storage failures never block: the process then runs with a freshly
    generated id that is kept for the rest of its life.
    """

    def __init__(
        self,
        secure_store: KeyValueStore,
        backup_store: Optional[KeyValueStore] = None,
        platform: str = "ios",
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.secure_store = secure_store
        self.backup_store = backup_store
        self.platform = platform
        self.now_ms = now_ms
        self._install_id: Optional[str] = None
        self._install_timestamp: Optional[int] = None

    @property
    def _uses_backup(self) -> bool:
        return self.platform == "ios" and self.backup_store is not None

    async def _read(self, store: KeyValueStore, key: str) -> Optional[str]:
        try:
            return await store.get_item(key)
        except Exception as e:
            logfire.error(f"Install id read failed: {e}", extra={"key": key})
            return None

    async def _write(self, store: KeyValueStore, key: str, value: str) -> bool:
        try:
            await store.set_item(key, value)
            return True
        except Exception as e:
            logfire.error(f"Install id write failed: {e}", extra={"key": key})
            return False

    async def get_install_id(self) -> str:
        if self._install_id is not None:
            return self._install_id

        install_id = await self._read(self.secure_store, INSTALL_ID_KEY)
        if install_id:
            logfire.debug("Retrieved install id from secure store")
            if self._uses_backup:
                await self._write(self.backup_store, BACKUP_INSTALL_ID_KEY, install_id)
            self._install_id = install_id
            return install_id

        if self._uses_backup:
            install_id = await self._read(self.backup_store, BACKUP_INSTALL_ID_KEY)
            if install_id:
                logfire.info("Recovered install id from backup store")
                await self._write(self.secure_store, INSTALL_ID_KEY, install_id)
                self._install_id = install_id
                return install_id

        install_id = str(uuid.uuid4())
        secure_ok = await self._write(self.secure_store, INSTALL_ID_KEY, install_id)
        backup_ok = None
        if self._uses_backup:
            backup_ok = await self._write(self.backup_store, BACKUP_INSTALL_ID_KEY, install_id)
        logfire.info(
            "Generated new install id",
            extra={"install_id": install_id, "secure_stored": secure_ok, "backup_stored": backup_ok}
        )
        self._install_id = install_id
        return install_id

    async def get_install_timestamp(self) -> int:
        """Epoch millis of the first call on this install; only used for grace age."""
        if self._install_timestamp is not None:
            return self._install_timestamp

        store = self.backup_store or self.secure_store
        stored = await self._read(store, INSTALL_TIMESTAMP_KEY)
        if stored:
            try:
                self._install_timestamp = int(stored)
                return self._install_timestamp
            except ValueError:
                logfire.warning("Ignoring malformed install timestamp", extra={"value": stored})

        now = self.now_ms()
        await self._write(store, INSTALL_TIMESTAMP_KEY, str(now))
        self._install_timestamp = now
        return now

    async def clear_install_id(self) -> None:
        """QA reset: the next get_install_id() behaves like a fresh install."""
        self._install_id = None
        for store, key in ((self.secure_store, INSTALL_ID_KEY), (self.backup_store, BACKUP_INSTALL_ID_KEY)):
            if store is None:
                continue
            try:
                await store.delete_item(key)
            except Exception as e:
                logfire.error(f"Error clearing install id: {e}", extra={"key": key})
        logfire.info("Cleared install id")
