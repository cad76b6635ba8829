"""
shared/utils/security.py
JWT creation/verification, password hashing, and opaque token helpers.
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config.settings import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ── JWT ───────────────────────────────────────────────────────

def create_access_token(
    user_id: str,
    role: str,
    email: str,
    extra: Optional[dict] = None,
) -> tuple[str, str]:
    """
    Create a signed JWT access token.
    Returns (token, jti). The jti is used for deny-listing on logout.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": expire,
        "type": "access",
        **(extra or {}),
    }

    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def create_refresh_token() -> tuple[str, str]:
    """
    Create a cryptographically random refresh token.
    Returns (raw_token, hashed_token); store only the hash in DB.
    """
    return create_opaque_token(64)


def create_opaque_token(nbytes: int = 32) -> tuple[str, str]:
    """Random URL-safe token for reset/invite links. Returns (raw, hash)."""
    raw_token = secrets.token_urlsafe(nbytes)
    return raw_token, hash_token(raw_token)


def hash_token(token: str) -> str:
    """SHA-256 hash for securely storing refresh, reset and invite tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


def get_token_remaining_ttl(payload: dict) -> int:
    """Returns seconds until token expiry. Used for JWT deny-list TTL."""
    exp = payload.get("exp", 0)
    remaining = exp - datetime.now(timezone.utc).timestamp()
    return max(0, int(remaining))


# ── Password ──────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)
