"""Pydantic models for entitlement records and on-device entitlement state."""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Access = Literal["full", "free"]
GraceReason = Literal["fresh_install", "prior_access", "none"]
DevAccessState = Optional[Literal["trial", "paid", "expired"]]


class EntitlementRecord(BaseModel):
    """Server-side entitlement of one install. Exactly one per install_id."""
    install_id: str
    entitlement: Access = "free"
    platform: Optional[Literal["ios", "android"]] = None
    sku: Optional[str] = None
    purchase_token: Optional[str] = None
    transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Session(BaseModel):
    """Bearer session handed out by POST /session/start."""
    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime


class Purchase(BaseModel):
    """Store purchase normalized across iOS and Android."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    transaction_id: Optional[str] = None
    purchase_token: Optional[str] = None
    transaction_receipt: Optional[str] = None
    # Untouched SDK object, handed back to the SDK when finishing the transaction
    raw: Any = Field(default=None, exclude=True, repr=False)


class PurchaseResult(BaseModel):
    success: bool
    purchase: Optional[Purchase] = None
    error: Optional[str] = None
    cancelled: bool = False
    # Raw store message, for diagnostics only
    detail: Optional[str] = None


class StatusResult(BaseModel):
    """Authoritative backend answer for an install."""
    entitlement: Access
    expires_at: Optional[str] = None


class AccessCache(BaseModel):
    last_known_access: Optional[Access] = None
    # epoch millis
    last_verified_at: Optional[int] = None
    expires_at: Optional[str] = None


class GraceResult(BaseModel):
    should_grant_grace: bool
    reason: GraceReason
    hours_remaining: int


class EntitlementState(BaseModel):
    """Snapshot of what the UI layer may rely on."""
    model_config = ConfigDict(frozen=True)

    is_full_access: bool = False
    is_loading: bool = True
    products: tuple[Any, ...] = ()
    expires_at: Optional[str] = None
    error: Optional[str] = None
    is_grace: bool = False
    grace_reason: GraceReason = "none"
    dev_override: DevAccessState = None
    is_dev_mode: bool = False
