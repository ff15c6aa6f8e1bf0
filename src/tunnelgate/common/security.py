"""Password hashing and secret generation helpers."""

from __future__ import annotations

import secrets
from functools import lru_cache
from uuid import uuid4

import bcrypt


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    return bcrypt.hashpw(b"tunnelgate-dummy-password", bcrypt.gensalt())


def verify_password(password: str, password_hash: str | None) -> bool:
    """Check ``password`` against a bcrypt hash.

    Unknown principals are checked against a throwaway hash so a missing
    account costs the same time as a wrong password.
    """
    if not password_hash:
        bcrypt.checkpw(password.encode("utf-8"), _dummy_hash())
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def new_session_token() -> str:
    return secrets.token_hex(32)


def new_session_id() -> str:
    return str(uuid4())


def new_onboarding_token() -> str:
    """Sixteen URL-safe characters from 12 random bytes."""
    return secrets.token_urlsafe(12)
