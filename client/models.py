"""Client-side state persisted in the Credential Store."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredRegistration(BaseModel):
    device_id: str
    pairing_code: str
    fingerprint: str
    expires_at: datetime


class StoredToken(BaseModel):
    device_id: str
    token: str
    expires_at: datetime


class AuthState(str, Enum):
    UNREGISTERED = "unregistered"
    AWAITING_LINK = "awaiting-link"
    LINKED = "linked"
    NEAR_EXPIRY = "token-near-expiry"
    UNAUTHENTICATED = "unauthenticated"


class PairingStatus(str, Enum):
    LINKED = "linked"
    PENDING = "pending"  # timed out while the user had not linked yet
    FAILED = "failed"


class PairingResult(BaseModel):
    status: PairingStatus
    token: Optional[StoredToken] = None
    error: Optional[str] = None


class SyncState(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICTED = "conflicted"


class TimetableDraft(BaseModel):
    """What the caller edits: a timetable for one canonical key."""

    canonical_key: str
    title: str
    payload: dict[str, Any] = Field(default_factory=dict)
    start_time: Optional[str] = None
    total_duration: Optional[int] = None


class CacheEntry(TimetableDraft):
    """Local mirror of a remote resource plus sync bookkeeping.

    `last_modified` is required: an entry without one cannot take part in
    newer-wins resolution and fails validation on load. `version` increments
    on every local edit and is the stable identity the push scheduler keys on.
    """

    last_modified: datetime
    sync_state: SyncState = SyncState.PENDING
    last_synced_at: Optional[datetime] = None
    version: int = 0
    remote_id: Optional[str] = None
