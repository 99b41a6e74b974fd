"""
Bearer session handling for the billing backend.

A session token is reused until it is within one hour of expiry, so a token
can never run out in the middle of a request. All concurrent callers that
need a new session share a single in-flight POST /api/session/start.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
import logfire
from pydantic import ValidationError

from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.models.entitlement_models import Session
from echoes_billing.core.models.session_models import SessionStartResponse
from echoes_billing.core.service.entitlement_engine.install_identity import InstallIdentity
from echoes_billing.core.service.entitlement_engine.storage import KeyValueStore

SESSION_TOKEN_KEY = "echoes_session_token"
SESSION_EXPIRES_KEY = "echoes_session_expires"

SESSION_VALIDITY_BUFFER = timedelta(hours=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expiry(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


class SessionManager:
    def __init__(
        self,
        install_identity: InstallIdentity,
        store: KeyValueStore,
        http_client: httpx.AsyncClient,
        settings: ClientSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.install_identity = install_identity
        self.store = store
        self.http_client = http_client
        self.settings = settings
        self.clock = clock
        self._cached: Optional[Session] = None
        self._pending: Optional[asyncio.Task] = None

    def _is_valid(self, session: Optional[Session]) -> bool:
        if session is None:
            return False
        return session.expires_at - self.clock() > SESSION_VALIDITY_BUFFER

    async def _get_stored_session(self) -> Optional[Session]:
        try:
            token = await self.store.get_item(SESSION_TOKEN_KEY)
            expires = await self.store.get_item(SESSION_EXPIRES_KEY)
            if token and expires:
                return Session(token=token, expires_at=_parse_expiry(expires))
        except Exception as e:
            logfire.error(f"Error reading stored session: {e}")
        return None

    async def _store_session(self, session: Session) -> None:
        try:
            await self.store.set_item(SESSION_TOKEN_KEY, session.token)
            await self.store.set_item(SESSION_EXPIRES_KEY, session.expires_at.isoformat())
            logfire.debug("Stored session", extra={"expires_at": session.expires_at.isoformat()})
        except Exception as e:
            logfire.error(f"Error storing session: {e}")

    async def _clear_stored_session(self) -> None:
        self._cached = None
        try:
            await self.store.delete_item(SESSION_TOKEN_KEY)
            await self.store.delete_item(SESSION_EXPIRES_KEY)
        except Exception as e:
            logfire.error(f"Error clearing session: {e}")

    async def _request_new_session(self) -> Optional[Session]:
        install_id = await self.install_identity.get_install_id()
        logfire.info("Requesting new session", extra={"install_id": install_id})

        try:
            response = await self.http_client.post(
                "/api/session/start",
                json={
                    "installId": install_id,
                    "platform": self.settings.PLATFORM,
                    "appVersion": self.settings.APP_VERSION,
                    "deviceTime": self.clock().isoformat(),
                },
                timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logfire.error(f"Error requesting session: {e}")
            return None

        if response.status_code != 200:
            logfire.error(
                f"Failed to start session: {response.status_code}",
                extra={"response_body": response.text[:500]}
            )
            return None

        try:
            body = SessionStartResponse.model_validate(response.json())
            if not body.session_token or not body.expires_at:
                logfire.error("Invalid session response - missing token or expiry")
                return None
            session = Session(token=body.session_token, expires_at=_parse_expiry(body.expires_at))
        except (ValueError, ValidationError, AttributeError) as e:
            logfire.error(f"Malformed session response: {e}")
            return None

        await self._store_session(session)
        self._cached = session
        return session

    async def _issue(self) -> Optional[str]:
        """Start a session request, or join the one already in flight."""
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._request_new_session())
            self._pending.add_done_callback(self._clear_pending)
        else:
            logfire.debug("Session request already in progress, waiting")
        session = await asyncio.shield(self._pending)
        return session.token if session is not None else None

    def _clear_pending(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None

    async def ensure_session(self) -> Optional[str]:
        """A token valid for at least another hour, issuing one if needed. None if the backend is unreachable."""
        if self._is_valid(self._cached):
            return self._cached.token

        if self._pending is None:
            stored = await self._get_stored_session()
            if self._is_valid(stored):
                self._cached = stored
                return stored.token

        # Another caller may have finished issuing while the store was read
        if self._is_valid(self._cached):
            return self._cached.token

        return await self._issue()

    async def get_session_token(self) -> Optional[str]:
        """Cached or stored valid token; never contacts the backend."""
        if self._is_valid(self._cached):
            return self._cached.token
        stored = await self._get_stored_session()
        if self._is_valid(stored):
            self._cached = stored
            return stored.token
        return None

    async def refresh_session(self) -> Optional[str]:
        """Drop the current session and issue a new one, joining any in-flight issuance."""
        if self._pending is not None:
            logfire.debug("Refresh waiting for pending session request")
            return await self._issue()

        await self._clear_stored_session()
        return await self._issue()

    async def clear_session(self) -> None:
        await self._clear_stored_session()
