"""Password hashing and verification using bcrypt."""

from typing import Optional

import bcrypt


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Hash a plain password. Cost factor defaults to ``settings.auth.bcrypt_rounds``."""
    if not plain:
        raise ValueError("password cannot be empty")
    if rounds is None:
        from config.settings import settings
        rounds = settings.auth.bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify plain password against stored hash. Malformed hashes count as a mismatch."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False
