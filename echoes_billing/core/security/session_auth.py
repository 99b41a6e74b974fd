"""Install session tokens and bearer verification."""
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
import logfire
from fastapi import Header, HTTPException

from echoes_billing.core.config.general_config import settings

SESSION_TOKEN_AUDIENCE = "echoes-billing"


class SessionAuthVerifier:
    """Issues and checks the HS256 session tokens bound to an install id."""

    @staticmethod
    def issue_session_token(
        install_id: str,
        platform: str,
        now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        """
        Create a session token for an install.

        Args:
            install_id: Install identity the session is bound to
            platform: Client platform (ios, android, web)
            now: Issue time, defaults to the current UTC time

        Returns:
            Tuple of (token, expires_at)
        """
        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(hours=settings.SESSION_LIFETIME_HOURS)
        payload = {
            "sub": install_id,
            "platform": platform,
            "aud": SESSION_TOKEN_AUDIENCE,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, settings.SESSION_SECRET, algorithm="HS256")
        return token, expires_at

    @staticmethod
    def verify_session_token(token: str) -> Optional[str]:
        """
        Verify signature and expiry of a session token.

        Returns:
            The install id the token was issued to, or None if the token is unusable
        """
        try:
            payload = jwt.decode(
                token,
                settings.SESSION_SECRET,
                algorithms=["HS256"],
                audience=SESSION_TOKEN_AUDIENCE,
            )
        except jwt.ExpiredSignatureError:
            logfire.info("Session token rejected: expired.")
            return None
        except jwt.InvalidTokenError as e:
            logfire.warning(f"Session token rejected: {e}")
            return None

        install_id = (payload.get("sub") or "").strip()
        return install_id or None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization is None or not authorization.startswith("Bearer "):
        return None
    token = authorization.removeprefix("Bearer ").strip()
    return token or None


async def require_session(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency resolving the install id of the calling session.

    Raises:
        HTTPException: 401 if the bearer token is missing, invalid or expired
    """
    token = _bearer_token(authorization)
    if token is None:
        logfire.warning("Request rejected: missing bearer session token.")
        raise HTTPException(status_code=401, detail="Missing session token")

    install_id = SessionAuthVerifier.verify_session_token(token)
    if install_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token")
    return install_id


async def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """FastAPI dependency guarding maintenance endpoints."""
    token = _bearer_token(authorization)
    if not settings.ADMIN_TOKEN or token is None or not hmac.compare_digest(token, settings.ADMIN_TOKEN):
        logfire.warning("Maintenance request rejected: invalid admin token.")
        raise HTTPException(status_code=403, detail="Invalid admin token")
