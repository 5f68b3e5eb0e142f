"""Password hashing for accounts and protected notes.

Hashes are opaque strings to the rest of Notevault; only this module knows
they are bcrypt.
"""
import logging
from typing import Protocol

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes; newer releases reject longer input
BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    hashed = bcrypt.hashpw(_encode(password), bcrypt.gensalt())
    # Stored as a UTF-8 string like: "$2b$12$..."
    return hashed.decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash. Unparseable hashes never match."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError as e:
        logger.warning(f"Stored password hash is not a valid bcrypt hash: {e}")
        return False


class PasswordHasher(Protocol):
    """One-way hash/verify capability used by the services."""

    def hash(self, password: str) -> str:
        ...

    def verify(self, password: str, hashed: str) -> bool:
        ...


class BcryptHasher:
    """PasswordHasher backed by ``hash_password``/``verify_password``."""

    def hash(self, password: str) -> str:
        return hash_password(password)

    def verify(self, password: str, hashed: str) -> bool:
        return verify_password(password, hashed)
