"""
Shared verification service for iOS and Android purchase verification.

This module contains common logic for:
- Dispatching client purchase claims to the matching platform verifier
- Maintaining the single EntitlementRecord of an install
- Answering entitlement status and re-verifying expired records
"""
from datetime import datetime, timezone
from typing import Any, Optional

import logfire

from echoes_billing.core.config.store_config import AppleStoreConfig, GooglePlayConfig
from echoes_billing.core.models.entitlement_models import EntitlementRecord
from echoes_billing.core.service.purchase_verification.apple_verifier import AppleStoreVerifier
from echoes_billing.core.service.purchase_verification.google_verifier import GooglePlayVerifier
from echoes_billing.core.service.purchase_verification.models import (
    EntitlementResponse,
    PurchaseVerificationRequest,
    PurchaseVerificationResponse,
    SubscriptionCheckResponse,
    VerificationResult,
)


def build_apple_verifier() -> Optional[AppleStoreVerifier]:
    if not AppleStoreConfig.is_configured():
        return None
    return AppleStoreVerifier(
        private_key=AppleStoreConfig.PRIVATE_KEY,
        key_id=AppleStoreConfig.KEY_ID,
        issuer_id=AppleStoreConfig.ISSUER_ID,
        bundle_id=AppleStoreConfig.BUNDLE_ID,
        environment=AppleStoreConfig.ENVIRONMENT,
    )


def build_google_verifier() -> Optional[GooglePlayVerifier]:
    if not GooglePlayConfig.is_configured():
        return None
    return GooglePlayVerifier(
        service_account_key=GooglePlayConfig.SERVICE_ACCOUNT_KEY,
        package_name=GooglePlayConfig.PACKAGE_NAME,
    )


def normalize_entitlement(value: Any) -> str:
    """Older records and clients use 'pro' for full access."""
    return "full" if value in ("full", "pro") else "free"


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class VerificationService:
    """Service class for purchase verification and entitlement status."""

    def __init__(
        self,
        store: Any,
        apple_verifier: Optional[AppleStoreVerifier] = None,
        google_verifier: Optional[GooglePlayVerifier] = None,
        package_name: str = GooglePlayConfig.PACKAGE_NAME,
    ):
        self.store = store
        self.apple_verifier = apple_verifier
        self.google_verifier = google_verifier
        self.package_name = package_name

    def get_status(self, install_id: str, now: Optional[datetime] = None) -> EntitlementResponse:
        """
        Current entitlement of an install.

        A full record whose expiry has passed is reported as free until the
        re-verification job or a new purchase extends it.
        """
        now = now or datetime.now(timezone.utc)
        record = self.store.get(install_id)
        if record is None:
            return EntitlementResponse(entitlement="free", expires_at=None)

        entitlement = normalize_entitlement(record.entitlement)
        if entitlement == "full" and record.expires_at is not None and _as_utc(record.expires_at) <= now:
            logfire.info("Entitlement record expired", extra={"install_id": install_id})
            entitlement = "free"

        return EntitlementResponse(entitlement=entitlement, expires_at=_iso(record.expires_at))

    async def _run_verifier(self, request: PurchaseVerificationRequest) -> VerificationResult:
        if request.platform == "ios":
            if self.apple_verifier is None:
                logfire.error("Apple credentials not configured")
                return VerificationResult(
                    valid=False, entitled=False, source="apple", error="Apple credentials not configured"
                )
            # Receipt data is legacy; the transaction id alone is looked up server to server
            return await self.apple_verifier.verify_transaction(request.transaction_id or "")

        if self.google_verifier is None:
            logfire.error("Google credentials not configured")
            return VerificationResult(
                valid=False, entitled=False, source="google", error="Google credentials not configured"
            )
        if request.package_name and request.package_name != self.package_name:
            logfire.warning(
                "Package name mismatch in verification request",
                extra={"package_name": request.package_name}
            )
            return VerificationResult(valid=False, entitled=False, source="google", error="Package name mismatch")

        subscription_id = request.product_id or request.sku
        result = await self.google_verifier.verify_subscription(subscription_id, request.purchase_token or "")
        if result.entitled and result.needs_acknowledgement:
            await self.google_verifier.acknowledge_purchase(subscription_id, request.purchase_token)
        return result

    @staticmethod
    def _is_same_purchase(record: EntitlementRecord, request: PurchaseVerificationRequest) -> bool:
        if request.transaction_id and record.transaction_id == request.transaction_id:
            return True
        if request.purchase_token and record.purchase_token == request.purchase_token:
            return True
        return False

    async def verify_purchase(
        self,
        install_id: str,
        request: PurchaseVerificationRequest,
        now: Optional[datetime] = None
    ) -> PurchaseVerificationResponse:
        """
        Verify a client purchase claim with the store and update the install's record.

        Args:
            install_id: Install resolved from the session token
            request: Platform-specific purchase claim

        Returns:
            PurchaseVerificationResponse reflecting the verified purchase
        """
        logfire.info(
            "Verifying purchase",
            extra={"install_id": install_id, "platform": request.platform, "sku": request.sku}
        )

        result = await self._run_verifier(request)
        now = now or datetime.now(timezone.utc)
        existing = self.store.get(install_id)

        if not result.valid:
            logfire.warning(
                f"Purchase could not be verified: {result.error}",
                extra={"install_id": install_id, "platform": request.platform}
            )
            return PurchaseVerificationResponse(
                entitlement="free",
                expires_at=None,
                entitled=False,
                source=result.source,
                product_id=None,
                error=result.error or "Verification failed",
            )

        if not result.entitled:
            # Refunds and expiries revoke the record they belong to
            if existing is not None and normalize_entitlement(existing.entitlement) == "full" and (
                self._is_same_purchase(existing, request)
                or (existing.expires_at is not None and _as_utc(existing.expires_at) <= now)
            ):
                self.store.upsert(existing.model_copy(update={
                    "entitlement": "free",
                    "last_verified_at": now,
                    "updated_at": now,
                }))
                logfire.info("Entitlement revoked", extra={"install_id": install_id, "reason": result.error})
            return PurchaseVerificationResponse(
                entitlement="free",
                expires_at=None,
                entitled=False,
                source=result.source,
                product_id=result.product_id,
                error=result.error or "Verification failed",
            )

        record = EntitlementRecord(
            install_id=install_id,
            entitlement="full",
            platform=request.platform,
            sku=result.product_id or request.sku,
            purchase_token=request.purchase_token,
            transaction_id=request.transaction_id,
            expires_at=result.expires_at,
            last_verified_at=now,
            created_at=existing.created_at if existing is not None and existing.created_at else now,
            updated_at=now,
        )
        self.store.upsert(record)
        logfire.info(
            "Entitlement granted",
            extra={"install_id": install_id, "sku": record.sku, "expires_at": _iso(record.expires_at),
                   "created": existing is None}
        )

        return PurchaseVerificationResponse(
            entitlement="full",
            expires_at=result.expires_at_iso(),
            entitled=True,
            source=result.source,
            product_id=record.sku,
        )

    async def reverify_expired(self, now: Optional[datetime] = None) -> SubscriptionCheckResponse:
        """
        Ask the stores about every full record whose expiry has passed.

        Renewed subscriptions get their new expiry; everything the store no
        longer entitles is reverted to free. Records the store could not answer
        for are left untouched and counted as errors.
        """
        now = now or datetime.now(timezone.utc)
        records = self.store.list_expired_full(now)
        renewed = reverted = errors = 0

        for record in records:
            try:
                if record.platform == "ios" and self.apple_verifier is not None:
                    result = await self.apple_verifier.get_subscription_status(record.transaction_id or "")
                elif record.platform == "android" and self.google_verifier is not None:
                    result = await self.google_verifier.verify_subscription(record.sku or "", record.purchase_token or "")
                else:
                    logfire.warning(
                        "No verifier for expired record",
                        extra={"install_id": record.install_id, "platform": record.platform}
                    )
                    errors += 1
                    continue

                if not result.valid:
                    errors += 1
                elif result.entitled:
                    self.store.upsert(record.model_copy(update={
                        "expires_at": result.expires_at,
                        "last_verified_at": now,
                        "updated_at": now,
                    }))
                    renewed += 1
                else:
                    self.store.upsert(record.model_copy(update={
                        "entitlement": "free",
                        "last_verified_at": now,
                        "updated_at": now,
                    }))
                    reverted += 1
            except Exception as e:
                logfire.error(f"Error re-verifying record {record.install_id}: {str(e)}")
                errors += 1

        logfire.info(
            "Expired entitlement re-verification finished",
            extra={"total": len(records), "renewed": renewed, "reverted": reverted, "errors": errors}
        )
        return SubscriptionCheckResponse(
            success=True,
            message="Re-verification completed",
            total_checked=len(records),
            renewed=renewed,
            reverted_to_free=reverted,
            errors=errors,
        )
