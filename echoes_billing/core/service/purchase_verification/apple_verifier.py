"""
Apple App Store Server API verification.

Looks up transactions with a locally signed ES256 JWT and classifies the
signed transaction payload Apple returns. Nothing here raises past the public
methods: every failure is reported through VerificationResult.

Documentation: https://developer.apple.com/documentation/appstoreserverapi
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import jwt
import logfire

from echoes_billing.core.service.purchase_verification.models import VerificationResult

APPLE_API_BASE_URLS = {
    "production": "https://api.storekit.itunes.apple.com",
    "sandbox": "https://api.storekit-sandbox.itunes.apple.com",
}

# Subscription status codes of "Get All Subscription Statuses":
# 1 = Active, 2 = Expired, 3 = Billing Retry, 4 = Grace Period, 5 = Revoked
ENTITLED_SUBSCRIPTION_STATUSES = (1, 4)

# Apple rejects tokens that live longer than 60 minutes
APP_STORE_JWT_LIFETIME_SECONDS = 3600


def decode_jws_payload(jws: str) -> Dict[str, Any]:
    """
    Decode the payload of a JWS returned by the App Store Server API.

    The signature is not re-verified: the payload arrives over Apple's own
    authenticated channel in response to our signed request.
    """
    return jwt.decode(jws, options={"verify_signature": False})


def _from_millis(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _environment_of(transaction: Dict[str, Any]) -> str:
    return "sandbox" if str(transaction.get("environment", "")).lower() == "sandbox" else "production"


def classify_transaction(transaction: Dict[str, Any], now: Optional[datetime] = None) -> VerificationResult:
    """
    Turn a decoded JWSTransaction into an entitlement decision.

    A revocation (refund) always wins over the expiry date. Transactions without
    an expiry date are non-subscription purchases and entitle indefinitely.
    """
    now = now or datetime.now(timezone.utc)
    product_id = transaction.get("productId")
    original_transaction_id = transaction.get("originalTransactionId")
    environment = _environment_of(transaction)

    if transaction.get("revocationDate"):
        logfire.info(
            "Apple transaction was revoked/refunded",
            extra={
                "product_id": product_id,
                "revocation_date": transaction.get("revocationDate"),
                "revocation_reason": transaction.get("revocationReason"),
            }
        )
        return VerificationResult(
            valid=True,
            entitled=False,
            source="apple",
            product_id=product_id,
            original_transaction_id=original_transaction_id,
            environment=environment,
            error="refunded",
        )

    expires_at = _from_millis(transaction.get("expiresDate"))
    entitled = expires_at is None or expires_at > now

    return VerificationResult(
        valid=True,
        entitled=entitled,
        source="apple",
        product_id=product_id,
        expires_at=expires_at,
        original_transaction_id=original_transaction_id,
        environment=environment,
        error=None if entitled else "expired",
    )


class AppleStoreVerifier:
    """Client for the App Store Server API endpoints used by purchase verification."""

    def __init__(
        self,
        private_key: str,
        key_id: str,
        issuer_id: str,
        bundle_id: str,
        environment: str = "production",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.private_key = private_key
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.bundle_id = bundle_id
        self.environment = environment if environment in APPLE_API_BASE_URLS else "production"
        self.http_client = http_client
        self.timeout = timeout

    def generate_app_store_jwt(self, now: Optional[int] = None) -> str:
        """
        Generate a JWT token for App Store Server API authentication.

        Returns:
            str: ES256 signed token valid for 60 minutes
        """
        issued_at = int(now if now is not None else time.time())

        headers = {
            "alg": "ES256",
            "kid": self.key_id,
            "typ": "JWT"
        }

        payload = {
            "iss": self.issuer_id,
            "iat": issued_at,
            "exp": issued_at + APP_STORE_JWT_LIFETIME_SECONDS,
            "aud": "appstoreconnect-v1",
            "bid": self.bundle_id
        }

        return jwt.encode(payload, self.private_key, algorithm="ES256", headers=headers)

    async def _send(self, url: str, token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json"
        }
        if self.http_client is not None:
            return await self.http_client.get(url, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(url, headers=headers, timeout=self.timeout)

    async def _get(self, path: str) -> httpx.Response:
        """
        GET an App Store Server API path.

        Production lookups that answer 404 are retried once against the sandbox,
        where TestFlight and App Review purchases live.
        """
        token = self.generate_app_store_jwt()
        environments = [self.environment]
        if self.environment == "production":
            environments.append("sandbox")

        response = None
        for environment in environments:
            url = f"{APPLE_API_BASE_URLS[environment]}{path}"
            logfire.debug(f"Calling App Store Server API: {url}")
            response = await self._send(url, token)
            if response.status_code != 404:
                break
            logfire.info(
                f"App Store Server API returned 404 in {environment}",
                extra={"path": path}
            )
        return response

    async def verify_transaction(self, transaction_id: str) -> VerificationResult:
        """
        Verify a transaction through "Get Transaction Info".

        Args:
            transaction_id: The current transaction id (never the original one)

        Returns:
            VerificationResult describing the transaction
        """
        logfire.info("Verifying Apple transaction", extra={"transaction_id": transaction_id})

        if not transaction_id:
            return VerificationResult(valid=False, entitled=False, source="apple", error="Missing transactionId")

        try:
            response = await self._get(f"/inApps/v1/transactions/{transaction_id}")

            if response.status_code != 200:
                logfire.warning(
                    f"Apple transaction lookup failed with status {response.status_code}",
                    extra={"response_body": response.text[:500], "transaction_id": transaction_id}
                )
                if response.status_code == 404:
                    error = "Transaction not found"
                elif response.status_code == 401:
                    error = "Authentication failed - check credentials"
                else:
                    error = f"API error: {response.status_code}"
                return VerificationResult(valid=False, entitled=False, source="apple", error=error)

            data = response.json()
            signed_transaction_info = data.get("signedTransactionInfo")
            if not signed_transaction_info:
                return VerificationResult(
                    valid=False, entitled=False, source="apple", error="No signed transaction in response"
                )

            transaction = decode_jws_payload(signed_transaction_info)
            result = classify_transaction(transaction)
            logfire.info(
                "Apple transaction verified",
                extra={
                    "product_id": result.product_id,
                    "entitled": result.entitled,
                    "environment": result.environment,
                    "expires_at": result.expires_at_iso(),
                }
            )
            return result

        except httpx.TimeoutException:
            logfire.error("Timeout calling Apple App Store Server API")
            return VerificationResult(valid=False, entitled=False, source="apple", error="Timeout")
        except httpx.RequestError as e:
            logfire.error(f"Request error calling Apple App Store Server API: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="apple", error=f"Request error: {e}")
        except Exception as e:
            logfire.error(f"Unexpected error during Apple verification: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="apple", error=str(e))

    async def get_subscription_status(self, original_transaction_id: str) -> VerificationResult:
        """
        Look up the renewal chain through "Get All Subscription Statuses".

        Args:
            original_transaction_id: First transaction of the subscription chain

        Returns:
            Entitled result for the first active or in-grace transaction, otherwise not entitled
        """
        logfire.info(
            "Getting Apple subscription status",
            extra={"original_transaction_id": original_transaction_id}
        )

        if not original_transaction_id:
            return VerificationResult(
                valid=False, entitled=False, source="apple", error="Missing originalTransactionId"
            )

        try:
            response = await self._get(f"/inApps/v1/subscriptions/{original_transaction_id}")

            if response.status_code != 200:
                logfire.warning(
                    f"Apple subscription status failed with status {response.status_code}",
                    extra={"original_transaction_id": original_transaction_id}
                )
                return VerificationResult(
                    valid=False, entitled=False, source="apple", error=f"API error: {response.status_code}"
                )

            data = response.json()
            for group in data.get("data") or []:
                for item in group.get("lastTransactions") or []:
                    if item.get("status") not in ENTITLED_SUBSCRIPTION_STATUSES:
                        continue
                    signed_transaction_info = item.get("signedTransactionInfo")
                    if not signed_transaction_info:
                        continue
                    transaction = decode_jws_payload(signed_transaction_info)
                    result = classify_transaction(transaction)
                    if item.get("status") == 4 and not transaction.get("revocationDate"):
                        # Billing grace period: Apple keeps the subscriber entitled past expiresDate
                        result = result.model_copy(update={"entitled": True, "error": None})
                    if result.entitled:
                        return result

            return VerificationResult(
                valid=True, entitled=False, source="apple", error="No active subscription found"
            )

        except httpx.TimeoutException:
            logfire.error("Timeout calling Apple subscription status API")
            return VerificationResult(valid=False, entitled=False, source="apple", error="Timeout")
        except httpx.RequestError as e:
            logfire.error(f"Request error calling Apple subscription status API: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="apple", error=f"Request error: {e}")
        except Exception as e:
            logfire.error(f"Unexpected error during Apple subscription status: {str(e)}")
            return VerificationResult(valid=False, entitled=False, source="apple", error=str(e))
