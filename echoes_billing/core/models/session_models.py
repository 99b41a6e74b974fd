"""Wire models for POST /session/start."""
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    install_id: str = Field(min_length=8, max_length=128, alias="installId")
    platform: Literal["ios", "android", "web"]
    app_version: Optional[str] = Field(default=None, alias="appVersion")
    # Client clock, logged to spot skewed devices; never trusted for expiry
    device_time: Optional[str] = Field(default=None, alias="deviceTime")


class SessionStartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(alias="sessionToken")
    expires_at: str = Field(alias="expiresAt")
