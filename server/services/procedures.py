"""Privileged presentation procedures.

These are the only functions that read or write the `presentations` table.
Every one takes the already-resolved `owner_user_id` as an explicit
parameter and filters or stamps rows with it; none looks at request context
or trusts an owner id coming from a request body. The gateway resolves the
owner from a verified credential and then calls in here.
"""

import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, col, select

from server.models.presentation import Presentation
from server.models.user import User
from server.services.errors import UserNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_START_TIME = "09:00"
DEFAULT_TOTAL_DURATION = 0


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert
    if dialect == "postgresql":
        return postgresql.insert
    raise RuntimeError(f"Atomic upsert not supported on dialect {dialect!r}")


def upsert_presentation(
    owner_user_id: str,
    canonical_key: str,
    title: str,
    payload: dict[str, Any],
    start_time: Optional[str],
    total_duration: Optional[int],
    session: Session,
) -> Presentation:
    """Insert or update the single row for (owner_user_id, canonical_key).

    One INSERT ... ON CONFLICT DO UPDATE statement: concurrent readers see
    either the old row or the new one, never neither. `last_modified` is
    stamped here on every call. Omitted start_time / total_duration keep the
    stored values on update and fall back to defaults on insert.
    """
    if session.get(User, owner_user_id) is None:
        raise UserNotFoundError(f"User {owner_user_id} not found")

    now = datetime.now(timezone.utc)
    payload_json = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    insert = _insert_for(session)
    stmt = insert(Presentation.__table__).values(
        id=f"prs_{secrets.token_hex(8)}",
        owner_user_id=owner_user_id,
        canonical_key=canonical_key,
        title=title,
        payload=payload_json,
        start_time=start_time if start_time is not None else DEFAULT_START_TIME,
        total_duration=total_duration if total_duration is not None else DEFAULT_TOTAL_DURATION,
        created_at=now,
        last_modified=now,
    )

    changes: dict[str, Any] = {
        "title": stmt.excluded.title,
        "payload": stmt.excluded.payload,
        "last_modified": stmt.excluded.last_modified,
    }
    if start_time is not None:
        changes["start_time"] = stmt.excluded.start_time
    if total_duration is not None:
        changes["total_duration"] = stmt.excluded.total_duration

    stmt = stmt.on_conflict_do_update(
        index_elements=["owner_user_id", "canonical_key"],
        set_=changes,
    )
    session.connection().execute(stmt)
    session.commit()

    row = get_presentation_by_key(owner_user_id, canonical_key, session)
    if row is None:
        # Only possible if the row was deleted between commit and read
        raise RuntimeError(f"Upserted presentation vanished: {canonical_key}")

    logger.info("Upserted presentation %s for user %s", row.id, owner_user_id)
    return row


def get_presentation_by_key(owner_user_id: str, canonical_key: str, session: Session) -> Presentation | None:
    return session.exec(
        select(Presentation).where(
            Presentation.owner_user_id == owner_user_id,
            Presentation.canonical_key == canonical_key,
        )
    ).first()


def get_presentation_by_id(owner_user_id: str, presentation_id: str, session: Session) -> Presentation | None:
    return session.exec(
        select(Presentation).where(
            Presentation.owner_user_id == owner_user_id,
            Presentation.id == presentation_id,
        )
    ).first()


def list_presentations(owner_user_id: str, session: Session, limit: int = 50, offset: int = 0) -> list[Presentation]:
    return list(
        session.exec(
            select(Presentation)
            .where(Presentation.owner_user_id == owner_user_id)
            .order_by(col(Presentation.last_modified).desc())
            .offset(offset)
            .limit(limit)
        ).all()
    )


def delete_presentation(owner_user_id: str, presentation_id: str, session: Session) -> bool:
    row = get_presentation_by_id(owner_user_id, presentation_id, session)
    if row is None:
        return False

    session.delete(row)
    session.commit()
    logger.info("Deleted presentation %s for user %s", presentation_id, owner_user_id)
    return True


def load_payload(row: Presentation) -> dict[str, Any]:
    return json.loads(row.payload) if row.payload else {}
