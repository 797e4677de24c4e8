"""Device pairing and device token models."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class DeviceRegistration(SQLModel, table=True):
    __tablename__ = "device_registrations"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(default_factory=lambda: f"dev_{secrets.token_hex(8)}", unique=True, index=True)
    pairing_code: str = Field(unique=True, index=True)
    fingerprint: str
    linked: bool = Field(default=False)
    owner_user_id: Optional[str] = Field(default=None, foreign_key="users.id")
    device_name: Optional[str] = None
    exchanged_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime


class DeviceToken(SQLModel, table=True):
    __tablename__ = "device_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    token_hash: str = Field(unique=True, index=True)  # sha256 of the raw token
    device_id: str = Field(index=True)
    owner_user_id: str = Field(foreign_key="users.id", index=True)
    fingerprint: str = Field(index=True)
    device_name: Optional[str] = None
    status: str = Field(default="active")  # 'active' | 'rotated' | 'revoked'
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime
    last_used_at: Optional[datetime] = None  # None until the token authenticates a request
    rotated_at: Optional[datetime] = None
    successor_id: Optional[int] = None  # token issued when this one was rotated
