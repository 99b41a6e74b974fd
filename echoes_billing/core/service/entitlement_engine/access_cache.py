"""
Last authoritative backend answer, and the grace policy that reads it.

The cache never grants access by itself. It is only consulted by
`check_grace_eligibility()` once the backend could not be reached.
"""
import json
import math
import time
from typing import Callable, Optional

import logfire
from pydantic import ValidationError

from echoes_billing.core.models.entitlement_models import Access, AccessCache, GraceResult
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.storage import KeyValueStore

ACCESS_CACHE_KEY = "echoes_access_cache"

FRESH_INSTALL_GRACE_HOURS = 72
PRIOR_ACCESS_GRACE_HOURS = 24

MS_PER_HOUR = 60 * 60 * 1000


class AccessCacheStore:
    def __init__(
        self,
        store: KeyValueStore,
        install_identity: InstallIdentity,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.store = store
        self.install_identity = install_identity
        self.now_ms = now_ms

    async def get_access_cache(self) -> AccessCache:
        try:
            stored = await self.store.get_item(ACCESS_CACHE_KEY)
            if stored:
                return AccessCache.model_validate(json.loads(stored))
        except (ValueError, ValidationError) as e:
            logfire.warning(f"Discarding unreadable access cache: {e}")
        except Exception as e:
            logfire.error(f"Error reading access cache: {e}")
        return AccessCache()

    async def set_access_cache(self, access: Access, expires_at: Optional[str]) -> None:
        cache = AccessCache(last_known_access=access, last_verified_at=self.now_ms(), expires_at=expires_at)
        try:
            await self.store.set_item(ACCESS_CACHE_KEY, cache.model_dump_json())
            logfire.debug("Cached access state", extra={"access": access})
        except Exception as e:
            logfire.error(f"Error writing access cache: {e}")

    async def clear_access_cache(self) -> None:
        try:
            await self.store.delete_item(ACCESS_CACHE_KEY)
        except Exception as e:
            logfire.error(f"Error clearing access cache: {e}")

    async def check_grace_eligibility(self) -> GraceResult:
        """Grace for a failed backend check: fresh install first, then recent full access."""
        install_timestamp = await self.install_identity.get_install_timestamp()
        cache = await self.get_access_cache()
        now = self.now_ms()

        hours_since_install = (now - install_timestamp) / MS_PER_HOUR
        if hours_since_install < FRESH_INSTALL_GRACE_HOURS:
            return GraceResult(
                should_grant_grace=True,
                reason="fresh_install",
                hours_remaining=math.ceil(FRESH_INSTALL_GRACE_HOURS - hours_since_install),
            )

        if cache.last_known_access == "full" and cache.last_verified_at:
            hours_since_verification = (now - cache.last_verified_at) / MS_PER_HOUR
            if hours_since_verification < PRIOR_ACCESS_GRACE_HOURS:
                return GraceResult(
                    should_grant_grace=True,
                    reason="prior_access",
                    hours_remaining=math.ceil(PRIOR_ACCESS_GRACE_HOURS - hours_since_verification),
                )

        return GraceResult(should_grant_grace=False, reason="none", hours_remaining=0)
