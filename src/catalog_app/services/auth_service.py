"""
Credential primitives: bcrypt password hashing and verification.
"""

import bcrypt
from loguru import logger


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt with automatic salt generation.

    Args:
        password: Plain text password to hash

    Returns:
        Bcrypt hash string (includes salt and cost factor)
    """
    if not password:
        raise ValueError("Password cannot be empty")

    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Compare a plain password against a stored bcrypt hash.

    Malformed or empty hashes never match.
    """
    if not plain_password or not hashed_password:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except ValueError as e:
        logger.warning(f"Password verification failed: {e}")
        return False
