"""bcrypt password hashing."""

from __future__ import annotations

import bcrypt

# bcrypt only considers the first 72 bytes of the password.
_MAX_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8")[:_MAX_BYTES], bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:_MAX_BYTES], hashed.encode("ascii"))
    except ValueError:
        # Malformed hash in the database.
        return False
