"""
Settings for the on-device entitlement engine.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client-side settings, read from ECHOES_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ECHOES_", env_file=".env", extra="ignore")

    # All billing calls go through one host so store secrets stay server side
    API_BASE: str = "https://source.thequietframe.com"
    PLATFORM: str = "ios"
    APP_VERSION: str = "1.0.0"

    REQUEST_TIMEOUT_SECONDS: float = 10.0

    MONTHLY_SKU: str = "com.thequietframe.echoes.monthly"
    YEARLY_SKU: str = "com.thequietframe.echoes.yearly"
    ANDROID_PACKAGE_NAME: str = "com.thequietframe.echoes"

    STORE_CONNECT_ATTEMPTS: int = 3
    STORE_CONNECT_BASE_DELAY_SECONDS: float = 0.5

    # Development builds only
    DEV_MODE: bool = False
    DEV_ENABLE_ENTITLEMENT_BACKEND: bool = False

    STORAGE_PATH: str = ".echoes_device_storage.json"

    @field_validator("PLATFORM")
    @classmethod
    def check_platform(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("ios", "android", "web"):
            raise ValueError("PLATFORM must be one of ios, android, web")
        return v

    @property
    def subscription_skus(self) -> list[str]:
        if self.PLATFORM == "web":
            return []
        return [self.MONTHLY_SKU, self.YEARLY_SKU]
