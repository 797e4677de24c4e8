"""Device pairing & device management API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlmodel import Session

from server.api.deps import bearer_scheme, get_current_user, rate_limit, require_admin
from server.config import Settings
from server.database import get_session, get_settings
from server.models.device import DeviceToken
from server.models.user import User
from server.schemas.device import (
    CleanupResponse,
    DeviceResponse,
    DeviceUpdateRequest,
    ExchangeRequest,
    LinkRequest,
    LinkResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from server.services.device_service import (
    exchange_code,
    link_device,
    list_devices,
    purge_expired,
    register_device,
    rename_device,
    revoke_device,
    rotate_token,
)
from server.services.errors import PairingError, TokenError
from server.utils.security import as_utc

router = APIRouter(tags=["devices"])

PAIRING_STATUS = {
    "invalid_fingerprint": status.HTTP_400_BAD_REQUEST,
    "device_mismatch": status.HTTP_400_BAD_REQUEST,
    "unknown_code": status.HTTP_404_NOT_FOUND,
    "not_linked": status.HTTP_404_NOT_FOUND,
    "already_linked": status.HTTP_409_CONFLICT,
    "already_exchanged": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
}


def _pairing_http_error(e: PairingError) -> HTTPException:
    return HTTPException(
        status_code=PAIRING_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST),
        detail={"error": e.code, "message": e.message},
    )


def _device_to_response(record: DeviceToken) -> DeviceResponse:
    return DeviceResponse(
        device_id=record.device_id,
        device_name=record.device_name,
        fingerprint=record.fingerprint[:12],
        issued_at=as_utc(record.issued_at),
        expires_at=as_utc(record.expires_at),
        last_used_at=as_utc(record.last_used_at) if record.last_used_at else None,
    )


# --- Pairing ---

@router.post(
    "/devices/register",
    response_model=RegisterResponse,
    dependencies=[Depends(rate_limit("register", "register_rate_limit"))],
)
def register(
    request: RegisterRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Start pairing: returns a short-lived code for the user to link on the web."""
    try:
        registration = register_device(request.fingerprint, session, settings)
    except PairingError as e:
        raise _pairing_http_error(e)
    return RegisterResponse(
        device_id=registration.device_id,
        pairing_code=registration.pairing_code,
        expires_at=as_utc(registration.expires_at),
    )


@router.post(
    "/devices/link",
    response_model=LinkResponse,
    dependencies=[Depends(rate_limit("link", "link_rate_limit"))],
)
def link(
    request: LinkRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Bind a pairing code to the signed-in web user."""
    try:
        registration = link_device(request.pairing_code, user, request.device_name, session, settings)
    except PairingError as e:
        raise _pairing_http_error(e)
    return LinkResponse(device_id=registration.device_id, linked=registration.linked)


@router.post(
    "/devices/exchange",
    response_model=TokenResponse,
    dependencies=[Depends(rate_limit("exchange", "exchange_rate_limit"))],
)
def exchange(
    request: ExchangeRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Trade a linked pairing code for a device token. 404 means not linked yet."""
    try:
        result = exchange_code(request.device_id, request.pairing_code, session, settings)
    except PairingError as e:
        raise _pairing_http_error(e)
    return TokenResponse(token=result["token"], expires_at=result["expires_at"])


@router.post("/devices/refresh", response_model=TokenResponse)
def refresh(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Rotate a device token. The presented token stops authenticating requests."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")
    try:
        result = rotate_token(credentials.credentials, session, settings)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": e.code, "message": e.message},
        )
    return TokenResponse(token=result["token"], expires_at=result["expires_at"])


# --- Management ---

@router.get("/devices", response_model=list[DeviceResponse])
def get_devices(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List the current user's paired devices."""
    return [_device_to_response(r) for r in list_devices(user.id, session)]


@router.patch("/devices/{device_id}", response_model=DeviceResponse)
def update_device(
    device_id: str,
    request: DeviceUpdateRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Rename a device."""
    record = rename_device(user.id, device_id, request.device_name, session)
    if record is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return _device_to_response(record)


@router.delete("/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_device(
    device_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Revoke (unpair) a device."""
    if not revoke_device(user.id, device_id, session):
        raise HTTPException(status_code=404, detail="Device not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/admin/tokens/cleanup", response_model=CleanupResponse)
def cleanup_tokens(
    _admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Purge expired and revoked credentials."""
    return CleanupResponse(**purge_expired(session))
