"""Device pairing and device management schemas."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from server.schemas.base import CamelModel


# --- Pairing ---

class RegisterRequest(CamelModel):
    fingerprint: str


class RegisterResponse(CamelModel):
    device_id: str
    pairing_code: str
    expires_at: datetime


class LinkRequest(CamelModel):
    pairing_code: str
    device_name: Optional[str] = Field(default=None, max_length=100)


class LinkResponse(CamelModel):
    device_id: str
    linked: bool


class ExchangeRequest(CamelModel):
    device_id: str
    pairing_code: str


class TokenResponse(CamelModel):
    token: str
    expires_at: datetime


# --- Management ---

class DeviceResponse(CamelModel):
    device_id: str
    device_name: Optional[str]
    fingerprint: str  # prefix only
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime]


class DeviceUpdateRequest(CamelModel):
    device_name: str = Field(min_length=1, max_length=100)


class CleanupResponse(CamelModel):
    tokens_deleted: int
    registrations_deleted: int
