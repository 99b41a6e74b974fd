"""
Entitlement status and purchase verification endpoints.
"""
import logfire
from fastapi import APIRouter, Depends, HTTPException, Query

from echoes_billing.app.api.dependencies import get_verification_service
from echoes_billing.core.security.session_auth import require_admin, require_session
from echoes_billing.core.service.purchase_verification.models import (
    EntitlementResponse,
    PurchaseVerificationRequest,
    PurchaseVerificationResponse,
    SubscriptionCheckResponse,
)
from echoes_billing.core.service.purchase_verification.verification_service import VerificationService

router = APIRouter()


@router.get(
    "/status",
    response_model=EntitlementResponse,
    summary="Get entitlement status",
    description="Returns the authoritative entitlement of the calling install"
)
async def get_status(
    install_id: str = Query(..., alias="installId"),
    session_install_id: str = Depends(require_session),
    service: VerificationService = Depends(get_verification_service),
) -> EntitlementResponse:
    if install_id != session_install_id:
        logfire.warning(
            "Status request for a different install than the session",
            extra={"install_id": install_id, "session_install_id": session_install_id}
        )
        raise HTTPException(status_code=401, detail="Session does not belong to this install")

    return service.get_status(install_id)


@router.post(
    "/verify",
    response_model=PurchaseVerificationResponse,
    summary="Verify a store purchase",
    description="Verifies an App Store or Google Play purchase server to server and updates the install's entitlement"
)
async def verify_purchase(
    request: PurchaseVerificationRequest,
    session_install_id: str = Depends(require_session),
    service: VerificationService = Depends(get_verification_service),
) -> PurchaseVerificationResponse:
    """
    Verify a purchase claim for the calling install.

    The client payload is only a claim: entitlement is granted solely on the
    answer of the Apple or Google server API.

    Raises:
        HTTPException: 400 on a missing platform identifier, 401 on a session mismatch
    """
    if request.install_id and request.install_id != session_install_id:
        raise HTTPException(status_code=401, detail="Session does not belong to this install")
    if request.platform == "ios" and not request.transaction_id:
        raise HTTPException(status_code=400, detail="transactionId is required for iOS purchases")
    if request.platform == "android" and not request.purchase_token:
        raise HTTPException(status_code=400, detail="purchaseToken is required for Android purchases")

    try:
        return await service.verify_purchase(session_install_id, request)
    except Exception as e:
        logfire.error(f"Unexpected error during purchase verification: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/reverify-expired",
    response_model=SubscriptionCheckResponse,
    summary="Re-verify expired entitlements",
    description="Asks the stores about every full entitlement whose expiry has passed"
)
async def reverify_expired(
    _: None = Depends(require_admin),
    service: VerificationService = Depends(get_verification_service),
) -> SubscriptionCheckResponse:
    logfire.info("Starting expired entitlement re-verification")
    return await service.reverify_expired()
