"""
Persistence for EntitlementRecord, keyed by install id.

The Supabase table carries a unique constraint on install_id; writes are
upserts on that column so an install never owns more than one record.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import logfire

from echoes_billing.core.models.entitlement_models import EntitlementRecord
from echoes_billing.core.service.supabase_connectors.supabase_client import (
    ENTITLEMENT_RECORDS_TABLE_NAME,
    get_supabase_service_role_client,
)


def _record_to_row(record: EntitlementRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")


class SupabaseEntitlementRecordStore:
    """EntitlementRecord store on the ENTITLEMENT_RECORDS table."""

    def __init__(self, supabase_client: Any = None):
        self.supabase = supabase_client if supabase_client is not None else get_supabase_service_role_client()

    def get(self, install_id: str) -> Optional[EntitlementRecord]:
        result = self.supabase.from_(ENTITLEMENT_RECORDS_TABLE_NAME)\
            .select("*")\
            .eq("install_id", install_id)\
            .limit(1)\
            .execute()

        if not result.data:
            return None
        return EntitlementRecord(**result.data[0])

    def upsert(self, record: EntitlementRecord) -> EntitlementRecord:
        row = _record_to_row(record)
        logfire.info(
            "Upserting entitlement record",
            extra={"install_id": record.install_id, "entitlement": record.entitlement, "sku": record.sku}
        )

        result = self.supabase.from_(ENTITLEMENT_RECORDS_TABLE_NAME)\
            .upsert(row, on_conflict="install_id")\
            .execute()

        if not result.data:
            logfire.error("Entitlement record upsert returned no data", extra={"install_id": record.install_id})
            raise RuntimeError(f"Failed to store entitlement record for install {record.install_id}")
        return EntitlementRecord(**result.data[0])

    def list_expired_full(self, now: Optional[datetime] = None) -> List[EntitlementRecord]:
        now = now or datetime.now(timezone.utc)
        result = self.supabase.from_(ENTITLEMENT_RECORDS_TABLE_NAME)\
            .select("*")\
            .eq("entitlement", "full")\
            .lt("expires_at", now.isoformat())\
            .execute()

        records = [EntitlementRecord(**row) for row in (result.data or [])]
        logfire.info(f"Found {len(records)} expired full entitlement records")
        return records


class InMemoryEntitlementRecordStore:
    """Process-local store with the same semantics, for development and tests."""

    def __init__(self):
        self._records: Dict[str, EntitlementRecord] = {}

    def get(self, install_id: str) -> Optional[EntitlementRecord]:
        return self._records.get(install_id)

    def upsert(self, record: EntitlementRecord) -> EntitlementRecord:
        self._records[record.install_id] = record
        return record

    def list_expired_full(self, now: Optional[datetime] = None) -> List[EntitlementRecord]:
        now = now or datetime.now(timezone.utc)
        return [
            r for r in self._records.values()
            if r.entitlement == "full" and r.expires_at is not None and r.expires_at <= now
        ]

    def __len__(self) -> int:
        return len(self._records)
