"""Common API dependencies: credential resolution, session-only and admin checks, rate limits.

Two credential kinds arrive as `Authorization: Bearer ...`:
a first-party session JWT (the web dashboard) or an opaque device token
(the extension). Both resolve to a `Principal` carrying the owner user id;
nothing downstream reads identity from anywhere else.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from server.config import Settings
from server.database import get_session, get_settings
from server.models.user import User
from server.services.device_service import authenticate_device_token
from server.services.errors import TokenError
from server.utils.security import decode_token, looks_like_jwt

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    owner_user_id: str
    source: str  # 'session' | 'device'
    device_id: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _session_user_id(token: str, settings: Settings) -> str:
    try:
        payload = decode_token(token, settings)
    except jwt.PyJWTError:
        raise _unauthorized("Invalid or expired session")

    if payload.get("type") != "session":
        raise _unauthorized("Invalid token type")
    return payload["sub"]


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """Resolve either credential kind to the owning user."""
    if credentials is None:
        raise _unauthorized("Authentication required")

    token = credentials.credentials
    if looks_like_jwt(token):
        user_id = _session_user_id(token, settings)
        if not session.get(User, user_id):
            raise _unauthorized("User not found")
        return Principal(owner_user_id=user_id, source="session")

    try:
        record = authenticate_device_token(token, session)
    except TokenError as e:
        raise _unauthorized(str(e))
    return Principal(owner_user_id=record.owner_user_id, source="device", device_id=record.device_id)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> User:
    """Session-only: device tokens cannot manage devices or link new ones."""
    if credentials is None or not looks_like_jwt(credentials.credentials):
        raise _unauthorized("Web session required")

    user = session.get(User, _session_user_id(credentials.credentials, settings))
    if not user:
        raise _unauthorized("User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require the current user to be an admin."""
    if user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(bucket: str, limit_setting: str):
    """Dependency factory: 429 with Retry-After once a client exceeds `settings.<limit_setting>`."""

    def dependency(request: Request, settings: Settings = Depends(get_settings)) -> None:
        ip = client_ip(request, settings)
        retry_after = request.app.state.rate_limiter.hit(bucket, ip, getattr(settings, limit_setting))
        if retry_after is None:
            return
        logger.warning("Rate limited %s on %s, retry in %ds", ip, bucket, retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limited", "message": "Too many requests", "retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    return dependency
