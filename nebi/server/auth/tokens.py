"""JWT session tokens.

Tokens are HS256-signed and carry ``user_id``, ``username``, ``iat`` and
``exp`` claims.  Verification failures raise :class:`InvalidTokenError`
with a message safe to return to the client.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt

ALGORITHM = "HS256"


class InvalidTokenError(ValueError):
    """Token missing, malformed, expired or signed with another key."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    username: str
    expires_at: datetime


def create_token(user_id: str, username: str, secret: str, *, ttl: timedelta = timedelta(hours=24)) -> str:
    now = datetime.now(UTC)
    payload = {
        "user_id": user_id,
        "username": username,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> TokenClaims:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM], options={"require": ["exp", "user_id"]})
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise InvalidTokenError(msg) from None
    except jwt.PyJWTError:
        msg = "Invalid token"
        raise InvalidTokenError(msg) from None

    return TokenClaims(
        user_id=str(payload["user_id"]),
        username=str(payload.get("username", "")),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
    )
