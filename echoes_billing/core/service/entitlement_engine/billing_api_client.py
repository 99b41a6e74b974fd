"""
Authenticated calls to the billing backend.

Every call goes through `_authorized_request`, which implements the single
retry policy: on a 401 the session is re-issued once and the call is repeated
once. Anything that is not an authoritative answer is raised as
BackendUnavailableError so the engine can fall back to grace.
"""
from typing import Any, Dict, Optional

import httpx
import logfire
from pydantic import ValidationError

from echoes_billing.core.config.client_config import ClientSettings
from echoes_billing.core.models.entitlement_models import StatusResult
from echoes_billing.core.service.entitlement_engine.session_manager import SessionManager


class BackendUnavailableError(Exception):
    """The billing backend could not give an authoritative answer."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def normalize_access(value: Any) -> str:
    # Older backends answered 'pro' for paid installs
    return "full" if value in ("full", "pro") else "free"


class BillingApiClient:
    def __init__(
        self,
        session_manager: SessionManager,
        http_client: httpx.AsyncClient,
        settings: ClientSettings,
    ):
        self.session_manager = session_manager
        self.http_client = http_client
        self.settings = settings

    async def _send(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        try:
            return await self.http_client.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"Request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Request failed: {e}") from e

    async def _authorized_request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        token = await self.session_manager.ensure_session()
        if not token:
            raise BackendUnavailableError("No session available")

        response = await self._send(method, path, token, **kwargs)

        if response.status_code == 401:
            logfire.info("Session rejected, refreshing", extra={"path": path})
            token = await self.session_manager.refresh_session()
            if not token:
                raise BackendUnavailableError("Session refresh failed", status_code=401)
            response = await self._send(method, path, token, **kwargs)
            if response.status_code == 401:
                logfire.error("Session rejected after refresh", extra={"path": path})
                raise BackendUnavailableError("Unauthorized after session refresh", status_code=401)

        if not response.is_success:
            logfire.error(
                f"Billing backend error: {response.status_code}",
                extra={"path": path, "response_body": response.text[:500]}
            )
            raise BackendUnavailableError(
                f"Backend returned {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendUnavailableError(f"Malformed backend response from {path}") from e
        if not isinstance(data, dict):
            logfire.error("Billing backend answered a non-object body", extra={"path": path})
            raise BackendUnavailableError(f"Malformed backend response from {path}")
        return data

    def _to_status(self, data: Dict[str, Any]) -> StatusResult:
        try:
            return StatusResult(
                entitlement=normalize_access(data.get("entitlement")),
                expires_at=data.get("expiresAt"),
            )
        except ValidationError as e:
            logfire.error(f"Unexpected entitlement answer: {e}")
            raise BackendUnavailableError("Malformed backend response") from e

    async def check_status(self, install_id: str) -> StatusResult:
        data = await self._authorized_request(
            "GET", "/api/billing/status", params={"installId": install_id}
        )
        return self._to_status(data)

    async def verify_purchase(self, install_id: str, payload: Dict[str, Any]) -> StatusResult:
        """POST /billing/verify. The backend re-checks the purchase with the store before answering."""
        body = {**payload, "installId": install_id}
        data = await self._authorized_request("POST", "/api/billing/verify", json=body)
        result = self._to_status(data)
        logfire.info(
            "Verify answered",
            extra={"entitlement": result.entitlement, "sku": payload.get("sku"), "error": data.get("error")}
        )
        return result
