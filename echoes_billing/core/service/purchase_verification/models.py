"""
Common models for purchase verification across platforms.
"""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class VerificationResult(BaseModel):
    """Uniform answer of a platform verifier. Verifiers never raise past this."""
    valid: bool
    entitled: bool
    source: Literal["apple", "google"]
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    original_transaction_id: Optional[str] = None
    purchase_token: Optional[str] = None
    environment: Optional[str] = None
    # Google v1 only: purchase still waits for a server-side acknowledgement
    needs_acknowledgement: bool = False
    error: Optional[str] = None

    def expires_at_iso(self) -> Optional[str]:
        if self.expires_at is None:
            return None
        return self.expires_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class PurchaseVerificationRequest(BaseModel):
    """
    Body of POST /billing/verify.

    iOS sends transactionId (+ optional legacy receipt), Android sends
    purchaseToken, packageName and productId.
    """
    model_config = ConfigDict(populate_by_name=True)

    platform: Literal["ios", "android"]
    sku: str = Field(min_length=1)
    install_id: Optional[str] = Field(default=None, alias="installId")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    transaction_receipt: Optional[str] = Field(default=None, alias="transactionReceipt")
    purchase_token: Optional[str] = Field(default=None, alias="purchaseToken")
    package_name: Optional[str] = Field(default=None, alias="packageName")
    product_id: Optional[str] = Field(default=None, alias="productId")


class EntitlementResponse(BaseModel):
    """Response of GET /billing/status."""
    model_config = ConfigDict(populate_by_name=True)

    entitlement: Literal["full", "free"]
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")


class PurchaseVerificationResponse(EntitlementResponse):
    """Response of POST /billing/verify."""
    entitled: bool
    source: Literal["apple", "google"]
    product_id: Optional[str] = Field(default=None, alias="productId")
    error: Optional[str] = None


class SubscriptionCheckResponse(BaseModel):
    """Response model for the expired-record re-verification job."""
    success: bool
    message: str
    total_checked: int
    renewed: int
    reverted_to_free: int
    errors: int
