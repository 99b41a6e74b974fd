"""Data models."""
from echoes_billing.core.models.entitlement_models import (
    AccessCache,
    EntitlementRecord,
    EntitlementState,
    GraceResult,
    Purchase,
    PurchaseResult,
    Session,
    StatusResult,
)
from echoes_billing.core.models.session_models import (
    SessionStartRequest,
    SessionStartResponse,
)

__all__ = [
    "AccessCache",
    "EntitlementRecord",
    "EntitlementState",
    "GraceResult",
    "Purchase",
    "PurchaseResult",
    "Session",
    "StatusResult",
    "SessionStartRequest",
    "SessionStartResponse",
]
