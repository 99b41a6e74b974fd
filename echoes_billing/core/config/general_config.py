"""
Application configuration settings.
"""
import json
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env.server", case_sensitive=True, extra="ignore")

    PROJECT_NAME: str = "Echoes Billing Server"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "session, entitlement status and purchase verification backend for Echoes"

    API_PREFIX: str = "/api"

    # Server settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = True

    # Session tokens handed to app installs
    SESSION_SECRET: str = "dev-session-secret-change-me-before-deploying"
    SESSION_LIFETIME_HOURS: int = 24 * 30

    # Bearer token for maintenance endpoints (re-verification job)
    ADMIN_TOKEN: str = ""

    # "supabase" in production, "memory" for local development
    ENTITLEMENT_STORE: str = "supabase"

    # CORS settings (accept both comma-separated string and JSON list from env)
    BACKEND_CORS_ORIGINS: list[str] = [
        "http://localhost:8081",
        "http://localhost:19006",
    ]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors(cls, v):
        if v is None or v == "":
            return []
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                    if isinstance(parsed, list):
                        return [str(x).strip() for x in parsed]
                except ValueError:
                    # fall back to comma-splitting if JSON fails
                    pass
            return [part.strip() for part in s.split(",") if part.strip()]
        if isinstance(v, (list, tuple, set)):
            return [str(x).strip() for x in v]
        raise TypeError("BACKEND_CORS_ORIGINS must be a list or a string")

    @field_validator("ENTITLEMENT_STORE")
    @classmethod
    def check_store(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("supabase", "memory"):
            raise ValueError("ENTITLEMENT_STORE must be 'supabase' or 'memory'")
        return v


settings = Settings()
