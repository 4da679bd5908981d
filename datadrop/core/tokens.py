from __future__ import annotations

import time
from typing import Any, Optional

import jwt

from datadrop.config import JWT_SECRET

ALGORITHM = "HS256"
IDENTITY_TOKEN_TYPE = "cli"
IDENTITY_TOKEN_LIFETIME_SECONDS = 30 * 24 * 60 * 60


class TokenError(Exception):
    pass


class TokenInvalid(TokenError):
    """Bad signature, malformed token, or wrong claim shape."""


class TokenExpired(TokenError):
    """Signature is good but the validity window has passed."""


def _encode(claims: dict[str, Any], lifetime_seconds: int, now: Optional[int]) -> str:
    issued_at = int(time.time()) if now is None else now
    payload = dict(claims, iat=issued_at, exp=issued_at + lifetime_seconds)
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def create_identity_token(
    user_id: str,
    email: Optional[str],
    name: Optional[str],
    roles: list[str],
    now: Optional[int] = None,
) -> str:
    """Long-lived bearer token handed to the CLI after the device handshake."""
    return _encode(
        {
            "sub": user_id,
            "email": email,
            "name": name,
            "roles": list(roles),
            "type": IDENTITY_TOKEN_TYPE,
        },
        IDENTITY_TOKEN_LIFETIME_SECONDS,
        now,
    )


def verify_identity_token(token: str) -> dict[str, Any]:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        raise TokenInvalid(str(exc)) from exc
    if claims.get("type") != IDENTITY_TOKEN_TYPE:
        raise TokenInvalid("Invalid token type")
    if not claims.get("sub"):
        raise TokenInvalid("Token has no subject")
    return claims


def create_share_token(file_id: str, expires_in_seconds: int, now: Optional[int] = None) -> str:
    return _encode({"fileId": file_id}, expires_in_seconds, now)


def verify_share_token(token: str) -> dict[str, Any]:
    """Return the claims of a share token.

    Raises TokenExpired when only the window has passed, so the caller can tell
    the recipient to ask the owner for a fresh link.
    """
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[ALGORITHM],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpired(str(exc)) from exc
    except jwt.PyJWTError as exc:
        raise TokenInvalid(str(exc)) from exc
    if not isinstance(claims.get("fileId"), str):
        raise TokenInvalid("Token does not reference a file")
    return claims
