"""Password secret hashing for user accounts."""

from __future__ import annotations

import bcrypt

from . import log

# Cost factor passed to ``bcrypt.gensalt``. Tests lower it to keep runs fast.
BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    """Hash ``password`` with bcrypt and return the text form for storage.

    Raises:
        ValueError: If ``password`` is empty.
    """

    if not password:
        raise ValueError("Password must not be empty")
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Return ``True`` when ``password`` matches the stored bcrypt hash."""

    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        log.warning("Stored password hash is not a valid bcrypt hash")
        return False
