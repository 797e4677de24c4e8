"""Device pairing & device token business logic.

Pairing flow:
    register (device, unauthenticated) -> link (web session) -> exchange (device)
Token lifecycle:
    issued at exchange -> rotated on refresh (zero or more) -> expired / revoked

Raw tokens leave this module exactly once, in the exchange or refresh result.
Only their sha256 is stored.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, update
from sqlmodel import Session, col, select

from server.config import Settings
from server.models.device import DeviceRegistration, DeviceToken
from server.models.user import User
from server.services.errors import PairingError, TokenError
from server.utils.security import (
    as_utc,
    generate_device_token,
    generate_pairing_code,
    hash_token,
    is_valid_fingerprint,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def register_device(fingerprint: str, session: Session, settings: Settings) -> DeviceRegistration:
    """Create a short-lived registration the user can link from the web dashboard."""
    fingerprint = fingerprint.strip().lower()
    if not is_valid_fingerprint(fingerprint):
        raise PairingError("Fingerprint must be a sha256 hex digest", code="invalid_fingerprint")

    now = _now()
    code = generate_pairing_code(settings.pairing_code_length)
    while session.exec(select(DeviceRegistration).where(DeviceRegistration.pairing_code == code)).first():
        code = generate_pairing_code(settings.pairing_code_length)

    registration = DeviceRegistration(
        pairing_code=code,
        fingerprint=fingerprint,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.pairing_expire_seconds),
    )
    session.add(registration)
    session.commit()
    session.refresh(registration)
    logger.info("Registered device %s", registration.device_id)
    return registration


def link_device(
    pairing_code: str,
    user: User,
    device_name: str | None,
    session: Session,
    settings: Settings,
) -> DeviceRegistration:
    """Bind a pending registration to the signed-in user."""
    code = pairing_code.strip().upper()
    registration = session.exec(
        select(DeviceRegistration).where(DeviceRegistration.pairing_code == code)
    ).first()
    if not registration:
        raise PairingError("Unknown pairing code", code="unknown_code")

    if as_utc(registration.expires_at) <= _now():
        raise PairingError("Pairing code has expired", code="expired")

    if registration.linked:
        if registration.owner_user_id == user.id:
            return registration
        raise PairingError("Pairing code already used", code="already_linked")

    registration.linked = True
    registration.owner_user_id = user.id
    registration.device_name = device_name
    # The device gets a fresh window to finish polling the exchange
    registration.expires_at = _now() + timedelta(seconds=settings.pairing_expire_seconds)
    session.add(registration)
    session.commit()
    session.refresh(registration)
    logger.info("Linked device %s to user %s", registration.device_id, user.id)
    return registration


def _issue_token(
    device_id: str,
    owner_user_id: str,
    fingerprint: str,
    device_name: str | None,
    session: Session,
    settings: Settings,
) -> tuple[str, DeviceToken]:
    raw = generate_device_token()
    now = _now()
    record = DeviceToken(
        token_hash=hash_token(raw),
        device_id=device_id,
        owner_user_id=owner_user_id,
        fingerprint=fingerprint,
        device_name=device_name,
        issued_at=now,
        expires_at=now + timedelta(hours=settings.device_token_expire_hours),
    )
    session.add(record)
    return raw, record


def exchange_code(device_id: str, pairing_code: str, session: Session, settings: Settings) -> dict:
    """Trade a linked registration for a device token, at most once.

    Raises PairingError with code 'not_linked' while the user has not yet
    linked the code; callers treat that one as "keep polling".
    """
    code = pairing_code.strip().upper()
    registration = session.exec(
        select(DeviceRegistration).where(DeviceRegistration.pairing_code == code)
    ).first()
    if not registration:
        raise PairingError("Unknown or expired registration", code="expired")

    if registration.device_id != device_id:
        raise PairingError("Device id does not match pairing code", code="device_mismatch")

    if registration.exchanged_at is not None:
        raise PairingError("Registration already exchanged", code="already_exchanged")

    now = _now()
    if as_utc(registration.expires_at) <= now:
        raise PairingError("Unknown or expired registration", code="expired")

    if not registration.linked:
        raise PairingError("Device not linked yet", code="not_linked")

    # Claim the registration; a concurrent exchange loses here
    claimed = session.connection().execute(
        update(DeviceRegistration)
        .where(
            DeviceRegistration.id == registration.id,
            col(DeviceRegistration.exchanged_at).is_(None),
        )
        .values(exchanged_at=now)
    )
    if claimed.rowcount != 1:
        session.rollback()
        raise PairingError("Registration already exchanged", code="already_exchanged")

    # One live credential per (user, browser install)
    session.connection().execute(
        update(DeviceToken)
        .where(
            DeviceToken.owner_user_id == registration.owner_user_id,
            DeviceToken.fingerprint == registration.fingerprint,
            DeviceToken.status == "active",
        )
        .values(status="revoked")
    )

    raw, record = _issue_token(
        registration.device_id,
        registration.owner_user_id,
        registration.fingerprint,
        registration.device_name,
        session,
        settings,
    )
    session.commit()
    logger.info("Issued token for device %s", registration.device_id)
    return {"token": raw, "expires_at": as_utc(record.expires_at)}


def _find_active_token(raw_token: str, session: Session) -> DeviceToken | None:
    record = session.exec(
        select(DeviceToken).where(
            DeviceToken.token_hash == hash_token(raw_token),
            DeviceToken.status == "active",
        )
    ).first()
    if not record or as_utc(record.expires_at) <= _now():
        return None
    return record


def authenticate_device_token(raw_token: str, session: Session) -> DeviceToken:
    """Resolve a bearer token to its record, touching last_used_at."""
    record = _find_active_token(raw_token, session)
    if not record:
        raise TokenError("Invalid or expired device token")

    record.last_used_at = _now()
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def _issue_successor(record: DeviceToken, session: Session, settings: Settings) -> dict:
    raw, successor = _issue_token(
        record.device_id,
        record.owner_user_id,
        record.fingerprint,
        record.device_name,
        session,
        settings,
    )
    session.flush()
    session.connection().execute(
        update(DeviceToken).where(DeviceToken.id == record.id).values(successor_id=successor.id)
    )
    session.commit()
    return {"token": raw, "expires_at": as_utc(successor.expires_at)}


def rotate_token(raw_token: str, session: Session, settings: Settings) -> dict:
    """Invalidate the presented token and issue its successor in one transaction.

    Refresh is safe to retry: presenting a just-rotated token again, within
    `token_rotation_grace_seconds` and before its successor has authenticated
    anything, revokes that undelivered successor and issues a new one. Once
    the successor is used, or the window has passed, the old token is dead.
    """
    record = session.exec(select(DeviceToken).where(DeviceToken.token_hash == hash_token(raw_token))).first()
    if record and record.status == "rotated":
        return _reissue_successor(record, session, settings)
    if not record or record.status != "active" or as_utc(record.expires_at) <= _now():
        raise TokenError("Invalid or expired device token")

    rotated = session.connection().execute(
        update(DeviceToken)
        .where(DeviceToken.id == record.id, DeviceToken.status == "active")
        .values(status="rotated", rotated_at=_now())
    )
    if rotated.rowcount != 1:
        session.rollback()
        raise TokenError("Token already rotated")

    result = _issue_successor(record, session, settings)
    logger.info("Rotated token for device %s", record.device_id)
    return result


def _reissue_successor(record: DeviceToken, session: Session, settings: Settings) -> dict:
    now = _now()
    if as_utc(record.expires_at) <= now:
        raise TokenError("Invalid or expired device token")
    if record.rotated_at is None or record.successor_id is None:
        raise TokenError("Token already rotated")
    if as_utc(record.rotated_at) + timedelta(seconds=settings.token_rotation_grace_seconds) <= now:
        raise TokenError("Token already rotated")

    replaced = session.connection().execute(
        update(DeviceToken)
        .where(
            DeviceToken.id == record.successor_id,
            DeviceToken.status == "active",
            col(DeviceToken.last_used_at).is_(None),
        )
        .values(status="revoked")
    )
    if replaced.rowcount != 1:
        session.rollback()
        raise TokenError("Token already rotated")

    result = _issue_successor(record, session, settings)
    logger.info("Re-issued rotated token for device %s on a repeated refresh", record.device_id)
    return result


def list_devices(user_id: str, session: Session) -> list[DeviceToken]:
    """Active, unexpired device credentials of a user, newest first."""
    records = session.exec(
        select(DeviceToken)
        .where(DeviceToken.owner_user_id == user_id, DeviceToken.status == "active")
        .order_by(col(DeviceToken.issued_at).desc())
    ).all()
    now = _now()
    return [r for r in records if as_utc(r.expires_at) > now]


def rename_device(user_id: str, device_id: str, device_name: str, session: Session) -> DeviceToken | None:
    records = session.exec(
        select(DeviceToken).where(DeviceToken.owner_user_id == user_id, DeviceToken.device_id == device_id)
    ).all()
    if not records:
        return None

    for record in records:
        record.device_name = device_name
        session.add(record)
    session.commit()

    active = [r for r in records if r.status == "active"]
    latest = max(active or records, key=lambda r: as_utc(r.issued_at))
    session.refresh(latest)
    return latest


def revoke_device(user_id: str, device_id: str, session: Session) -> bool:
    """Revoke every token of a device owned by `user_id`."""
    owned = session.exec(
        select(DeviceToken).where(DeviceToken.owner_user_id == user_id, DeviceToken.device_id == device_id)
    ).first()
    if not owned:
        return False

    session.connection().execute(
        update(DeviceToken)
        .where(DeviceToken.owner_user_id == user_id, DeviceToken.device_id == device_id)
        .values(status="revoked")
    )
    session.commit()
    logger.info("Revoked device %s of user %s", device_id, user_id)
    return True


def purge_expired(session: Session) -> dict:
    """Delete dead token rows and expired unclaimed registrations."""
    now = _now()
    tokens = session.connection().execute(
        delete(DeviceToken).where(
            or_(DeviceToken.status != "active", DeviceToken.expires_at <= now)
        )
    )
    registrations = session.connection().execute(
        delete(DeviceRegistration).where(
            DeviceRegistration.expires_at <= now,
            col(DeviceRegistration.exchanged_at).is_(None),
        )
    )
    session.commit()
    result = {"tokens_deleted": tokens.rowcount, "registrations_deleted": registrations.rowcount}
    logger.info("Purged expired credentials: %s", result)
    return result
