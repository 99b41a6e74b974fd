"""
Google Play Developer API verification.

Uses the subscriptionsv2 endpoint first and falls back to the v1 subscriptions
endpoint, which still holds data for some older subscriptions. Authentication
is an OAuth2 access token obtained from the service account key.

Documentation: https://developers.google.com/android-publisher/api-ref/rest/v3/purchases.subscriptionsv2
"""
import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import httpx
import logfire
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from echoes_billing.core.service.purchase_verification.models import VerificationResult

ANDROID_PUBLISHER_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"

# Google Play Developer API scope
SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]

ACTIVE_V2_STATES = (
    "SUBSCRIPTION_STATE_ACTIVE",
    "SUBSCRIPTION_STATE_IN_GRACE_PERIOD",
)

_FRACTION = re.compile(r"\.(\d+)")


def parse_rfc3339(value: str) -> datetime:
    """Parse Google's RFC 3339 timestamps ("2027-01-01T00:00:00.123456789Z")."""
    s = value.strip().replace("Z", "+00:00")
    # fromisoformat wants exactly 6 fractional digits on older interpreters
    s = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_subscription_v2(
    purchase: Dict[str, Any],
    purchase_token: str,
    now: Optional[datetime] = None
) -> VerificationResult:
    """Entitled only in the ACTIVE and IN_GRACE_PERIOD states."""
    state = purchase.get("subscriptionState")
    line_items = purchase.get("lineItems") or []
    line_item = line_items[0] if line_items else {}
    expires_at = parse_rfc3339(line_item["expiryTime"]) if line_item.get("expiryTime") else None
    entitled = state in ACTIVE_V2_STATES

    return VerificationResult(
        valid=True,
        entitled=entitled,
        source="google",
        product_id=line_item.get("productId"),
        expires_at=expires_at,
        purchase_token=purchase_token,
        environment="test" if purchase.get("testPurchase") is not None else "production",
        needs_acknowledgement=purchase.get("acknowledgementState") == "ACKNOWLEDGEMENT_STATE_PENDING",
        error=None if entitled else f"Subscription not active ({state})",
    )


def classify_subscription_v1(
    purchase: Dict[str, Any],
    subscription_id: str,
    purchase_token: str,
    now: Optional[datetime] = None
) -> VerificationResult:
    """
    Entitled while expiryTimeMillis is in the future.

    cancelReason only means auto-renew was turned off; the subscriber keeps
    access until expiry, so it is logged and otherwise ignored.
    """
    now = now or datetime.now(timezone.utc)
    expiry_millis = purchase.get("expiryTimeMillis")
    if not expiry_millis:
        return VerificationResult(
            valid=False, entitled=False, source="google", error="Invalid purchase data: missing expiry time"
        )

    expires_at = datetime.fromtimestamp(int(expiry_millis) / 1000, tz=timezone.utc)
    entitled = expires_at > now

    if purchase.get("cancelReason") is not None:
        logfire.info(
            "Google subscription cancelled, access kept until expiry",
            extra={"cancel_reason": purchase.get("cancelReason"), "expires_at": expires_at.isoformat()}
        )

    return VerificationResult(
        valid=True,
        entitled=entitled,
        source="google",
        product_id=subscription_id,
        expires_at=expires_at,
        purchase_token=purchase_token,
        environment="test" if purchase.get("purchaseType") == 0 else "production",
        needs_acknowledgement=purchase.get("acknowledgementState") == 0,
        error=None if entitled else "expired",
    )


class GooglePlayVerifier:
    """Client for the Google Play Developer API endpoints used by purchase verification."""

    def __init__(
        self,
        service_account_key: Union[str, Dict[str, Any]],
        package_name: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.service_account_key = service_account_key
        self.package_name = package_name
        self.http_client = http_client
        self.timeout = timeout
        self._credentials = None

    def _load_credentials(self):
        if self._credentials is not None:
            return self._credentials

        info = self.service_account_key
        if isinstance(info, str):
            try:
                info = json.loads(info)
            except ValueError:
                raise ValueError("Invalid service account JSON")
        if not info.get("private_key") or not info.get("client_email"):
            raise ValueError("Missing required fields in service account")

        self._credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        logfire.info("Loaded Google service account credentials", extra={"client_email": info.get("client_email")})
        return self._credentials

    async def get_access_token(self) -> str:
        """
        Get a valid access token from the service account credentials.

        The RS256 assertion exchange at the account's token_uri is blocking,
        so it runs in a worker thread.
        """
        credentials = self._load_credentials()
        if not credentials.valid:
            await asyncio.to_thread(credentials.refresh, Request())
            logfire.debug("Refreshed Google access token")
        return credentials.token

    async def _send(self, method: str, url: str, access_token: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json"
        }
        if self.http_client is not None:
            return await self.http_client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)

    def _v1_url(self, subscription_id: str, purchase_token: str) -> str:
        return (
            f"{ANDROID_PUBLISHER_BASE_URL}/{self.package_name}/purchases/subscriptions/"
            f"{subscription_id}/tokens/{purchase_token}"
        )

    async def verify_subscription(self, subscription_id: str, purchase_token: str) -> VerificationResult:
        """
        Verify a subscription purchase token.

        Args:
            subscription_id: Subscription product id (needed by the v1 fallback)
            purchase_token: Token reported by Play Billing on the device

        Returns:
            VerificationResult describing the subscription
        """
        logfire.info("Verifying Google subscription", extra={"subscription_id": subscription_id})

        if not purchase_token:
            return VerificationResult(valid=False, entitled=False, source="google", error="Missing purchaseToken")

        try:
            access_token = await self.get_access_token()

            url_v2 = f"{ANDROID_PUBLISHER_BASE_URL}/{self.package_name}/purchases/subscriptionsv2/tokens/{purchase_token}"
            response = await self._send("GET", url_v2, access_token)

            if response.status_code == 200:
                result = classify_subscription_v2(response.json(), purchase_token)
                logfire.info(
                    "Google subscription verified (v2)",
                    extra={"entitled": result.entitled, "product_id": result.product_id}
                )
                return result

            logfire.info(
                f"Google subscriptionsv2 returned {response.status_code}, trying v1",
                extra={"subscription_id": subscription_id}
            )
            response = await self._send("GET", self._v1_url(subscription_id, purchase_token), access_token)

            if response.status_code != 200:
                logfire.warning(
                    f"Google verification failed with status {response.status_code}",
                    extra={"response_body": response.text[:500], "subscription_id": subscription_id}
                )
                if response.status_code == 404:
                    error = "Purchase not found"
                elif response.status_code in (401, 403):
                    error = "Authentication failed - check service account permissions"
                else:
                    error = f"API error: {response.status_code}"
                return VerificationResult(valid=False, entitled=False, source="google", error=error)

            result = classify_subscription_v1(response.json(), subscription_id, purchase_token)
            logfire.info(
                "Google subscription verified (v1)",
                extra={"entitled": result.entitled, "product_id": result.product_id}
            )
            return result

        except httpx.TimeoutException:
            logfire.error("Timeout calling Google Play API")
            return VerificationResult(valid=False, entitled=False, source="google", error="Timeout")
        except httpx.RequestError as e:
            logfire.error(f"Request error calling Google Play API: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="google", error=f"Request error: {e}")
        except Exception as e:
            logfire.error(f"Unexpected error during Google verification: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="google", error=str(e))

    async def acknowledge_purchase(self, subscription_id: str, purchase_token: str) -> bool:
        """Acknowledge a subscription purchase. Returns False instead of raising."""
        logfire.info("Acknowledging Google purchase", extra={"subscription_id": subscription_id})
        try:
            access_token = await self.get_access_token()
            url = f"{self._v1_url(subscription_id, purchase_token)}:acknowledge"
            response = await self._send("POST", url, access_token, json={})
            if response.status_code not in (200, 204):
                logfire.error(
                    f"Google acknowledge failed with status {response.status_code}",
                    extra={"response_body": response.text[:500]}
                )
                return False
            logfire.info("Google purchase acknowledged")
            return True
        except Exception as e:
            logfire.error(f"Google acknowledge error: {str(e)}")
            return False
