"""Security utilities: session JWTs, password hashing, device tokens, pairing codes."""

import hashlib
import re
import secrets
import string
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from server.config import Settings

FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")

# No 0/O/1/I so codes survive being read aloud or retyped
PAIRING_ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits if c not in "0O1I")


# --- Password Hashing ---

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


# --- Session JWT ---

def create_session_token(user_id: str, role: str, settings: Settings) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.session_token_expire_minutes)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "type": "session",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def looks_like_jwt(token: str) -> bool:
    return token.count(".") == 2


# --- Device Tokens ---

def generate_device_token() -> str:
    """Opaque 256-bit bearer token, url-safe and dot-free."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """One-way hash for token storage; the raw token is never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


# --- Pairing ---

def generate_pairing_code(length: int) -> str:
    return "".join(secrets.choice(PAIRING_ALPHABET) for _ in range(length))


def is_valid_fingerprint(value: str) -> bool:
    return bool(FINGERPRINT_RE.match(value))


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on the way back; every stored datetime is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
