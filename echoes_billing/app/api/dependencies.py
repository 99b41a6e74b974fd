"""
Shared FastAPI dependencies for the billing endpoints.
"""
from functools import lru_cache

import logfire

from echoes_billing.core.config.general_config import settings
from echoes_billing.core.config.store_config import GooglePlayConfig
from echoes_billing.core.service.purchase_verification.verification_service import (
    VerificationService,
    build_apple_verifier,
    build_google_verifier,
)
from echoes_billing.core.service.supabase_connectors.entitlement_record_client import (
    InMemoryEntitlementRecordStore,
    SupabaseEntitlementRecordStore,
)


@lru_cache
def get_verification_service() -> VerificationService:
    if settings.ENTITLEMENT_STORE == "memory":
        logfire.warning("Using in-memory entitlement store, records are lost on restart")
        store = InMemoryEntitlementRecordStore()
    else:
        store = SupabaseEntitlementRecordStore()

    return VerificationService(
        store=store,
        apple_verifier=build_apple_verifier(),
        google_verifier=build_google_verifier(),
        package_name=GooglePlayConfig.PACKAGE_NAME,
    )
