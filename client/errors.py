"""Client error taxonomy.

Every failure the client surfaces is a SyncError. The subclass says how to
react: TransientError is retried with backoff, UnauthorizedError triggers at
most one refresh and then means "re-pair", InvalidRequestError and
NotFoundError are terminal for the attempt.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base error. `phase` is where it happened: auth, read, write or pairing."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        phase: Optional[str] = None,
        payload: Any = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.phase = phase
        self.payload = payload
        self.retry_after = retry_after  # seconds, from a Retry-After header

    @property
    def error_code(self) -> Optional[str]:
        """Server error code from a `{"detail": {"error": ...}}` body, if any."""
        if isinstance(self.payload, dict):
            detail = self.payload.get("detail")
            if isinstance(detail, dict):
                return detail.get("error")
            return self.payload.get("error") or self.payload.get("code")
        return None


class TransientError(SyncError):
    """Network failure, timeout, 5xx or 429."""


class UnauthorizedError(SyncError):
    """401/403, or no usable token at all."""


class InvalidRequestError(SyncError):
    """400-class rejection; retrying the same request cannot succeed."""


class NotFoundError(SyncError):
    """404."""


class TimestampError(InvalidRequestError):
    """A cache entry or remote resource has no last_modified to compare."""


class RegistrationError(SyncError):
    """Device registration could not be completed."""


class PairingError(SyncError):
    """Pairing ended in a terminal failure (expired, consumed, mismatched)."""


def error_for_status(
    status_code: int,
    message: str,
    *,
    phase: Optional[str] = None,
    payload: Any = None,
    retry_after: Optional[float] = None,
) -> SyncError:
    """Map an HTTP status to the error class that decides retry behaviour."""
    if status_code == 429 or status_code >= 500:
        cls = TransientError
    elif status_code in (401, 403):
        cls = UnauthorizedError
    elif status_code == 404:
        cls = NotFoundError
    else:
        cls = InvalidRequestError
    return cls(message, status_code=status_code, phase=phase, payload=payload, retry_after=retry_after)
