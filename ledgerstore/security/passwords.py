"""Password hashing collaborator for rows stored in the ``users`` table."""
from __future__ import annotations

import logging
from typing import Optional

from passlib.context import CryptContext
from passlib.exc import MissingBackendError, UnknownHashError

# Argon2 preferred; bcrypt hashes from older installs still verify.
pwd_context = CryptContext(schemes=["argon2", "bcrypt"], deprecated="auto")

logger = logging.getLogger(__name__)


def is_hashed(value: Optional[str]) -> bool:
    """Return True when ``value`` is already a hash this context understands."""
    if not value or not isinstance(value, str):
        return False
    return pwd_context.identify(value) is not None


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty.")
    return pwd_context.hash(password)


def ensure_hashed(value: Optional[str]) -> Optional[str]:
    """Hash plaintext, pass existing hashes and empty values through unchanged."""
    if not value or is_hashed(value):
        return value
    return hash_password(value)


def verify_password(stored_hash: Optional[str], provided_password: Optional[str]) -> bool:
    if not stored_hash or not provided_password:
        return False
    try:
        return pwd_context.verify(provided_password, stored_hash)
    except UnknownHashError:
        logger.warning("Unknown hash format encountered: %s...", stored_hash[:10])
        return False
    except MissingBackendError as exc:
        logger.error("No backend available to verify %s... hashes: %s", stored_hash[:4], exc)
        return False
    except ValueError as exc:
        logger.warning("Error comparing password hash (invalid format?): %s", exc)
        return False
