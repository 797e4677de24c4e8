"""First-party account & session business logic.

The web dashboard signs in here; the resulting session token is one of the
two credential kinds the gateway accepts. Devices never see the password.
"""

import logging

from sqlmodel import Session, select

from server.config import Settings
from server.models.user import User
from server.services.errors import AccountError
from server.utils.security import create_session_token, hash_password, verify_password

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def signup(email: str, password: str, name: str | None, session: Session, settings: Settings) -> dict:
    """Create an account and open a session. The first account becomes admin."""
    email = _normalize_email(email)
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise AccountError("An account with this email already exists", code="email_taken")

    is_first_user = session.exec(select(User)).first() is None
    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role="admin" if is_first_user else "member",
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Created user %s (role=%s)", user.id, user.role)

    return {
        "user_id": user.id,
        "session_token": create_session_token(user.id, user.role, settings),
        "role": user.role,
    }


def login(email: str, password: str, session: Session, settings: Settings) -> dict:
    """Verify credentials and open a session."""
    user = session.exec(select(User).where(User.email == _normalize_email(email))).first()
    if not user or not verify_password(password, user.password_hash):
        raise AccountError("Invalid email or password", code="invalid_credentials")

    return {
        "user_id": user.id,
        "session_token": create_session_token(user.id, user.role, settings),
        "role": user.role,
    }
