"""App Store / Google Play server credentials."""
import os
import logfire


DEFAULT_BUNDLE_ID = "com.thequietframe.echoes"
DEFAULT_PACKAGE_NAME = "com.thequietframe.echoes"


class AppleStoreConfig:
    """Configuration for the App Store Server API."""

    # PEM-encoded .p8 key from App Store Connect (literal "\n" sequences allowed)
    PRIVATE_KEY: str = os.getenv("APPLE_IAP_PRIVATE_KEY", "").replace("\\n", "\n")
    KEY_ID: str = os.getenv("APPLE_IAP_KEY_ID", "")
    ISSUER_ID: str = os.getenv("APPLE_IAP_ISSUER_ID", "")
    BUNDLE_ID: str = os.getenv("APPLE_BUNDLE_ID", DEFAULT_BUNDLE_ID)

    # Environment tried first; production falls back to sandbox on 404
    ENVIRONMENT: str = os.getenv("APPLE_ENV", "production").strip().lower()

    @classmethod
    def is_configured(cls) -> bool:
        return bool(cls.PRIVATE_KEY and cls.KEY_ID and cls.ISSUER_ID)

    @classmethod
    def validate(cls, strict: bool = False) -> None:
        """
        Validate that required configuration is set.

        Args:
            strict: If True, raise exception on missing config. If False, only log warnings.
        """
        missing = [
            name for name, value in (
                ("APPLE_IAP_PRIVATE_KEY", cls.PRIVATE_KEY),
                ("APPLE_IAP_KEY_ID", cls.KEY_ID),
                ("APPLE_IAP_ISSUER_ID", cls.ISSUER_ID),
            ) if not value
        ]
        if cls.ENVIRONMENT not in ("sandbox", "production"):
            missing.append("APPLE_ENV (must be 'sandbox' or 'production')")

        if not missing:
            return
        if strict:
            raise ValueError(f"Missing required App Store configuration: {', '.join(missing)}")
        logfire.warning(f"App Store verification not fully configured: {', '.join(missing)}")


class GooglePlayConfig:
    """Configuration for the Google Play Developer API."""

    # JSON string of the service account key
    SERVICE_ACCOUNT_KEY: str = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY", "")
    PACKAGE_NAME: str = os.getenv("GOOGLE_PACKAGE_NAME", DEFAULT_PACKAGE_NAME)

    SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]

    @classmethod
    def is_configured(cls) -> bool:
        return bool(cls.SERVICE_ACCOUNT_KEY)

    @classmethod
    def validate(cls, strict: bool = False) -> None:
        if cls.SERVICE_ACCOUNT_KEY:
            return
        msg = "GOOGLE_SERVICE_ACCOUNT_KEY is not set"
        if strict:
            raise ValueError(f"Missing required Google Play configuration: {msg}")
        logfire.warning(f"Google Play verification not configured: {msg}")
