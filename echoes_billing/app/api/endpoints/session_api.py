"""
Install session endpoint.
"""
from datetime import timezone

import logfire
from fastapi import APIRouter

from echoes_billing.core.models.session_models import SessionStartRequest, SessionStartResponse
from echoes_billing.core.security.session_auth import SessionAuthVerifier

router = APIRouter()


@router.post(
    "/start",
    response_model=SessionStartResponse,
    summary="Start an install session",
    description="Exchanges an anonymous install id for a short-lived bearer session token"
)
async def start_session(request: SessionStartRequest) -> SessionStartResponse:
    """
    Issue a session token for an install.

    Args:
        request: install id, platform, app version and device time

    Returns:
        SessionStartResponse with the token and its expiry
    """
    logfire.info(
        "Starting session",
        extra={
            "install_id": request.install_id,
            "platform": request.platform,
            "app_version": request.app_version,
            "device_time": request.device_time,
        }
    )

    token, expires_at = SessionAuthVerifier.issue_session_token(request.install_id, request.platform)

    return SessionStartResponse(
        session_token=token,
        expires_at=expires_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
