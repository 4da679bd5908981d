from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request

from datadrop.core.exceptions import Unauthorized
from datadrop.core.identity import IdentityError, verify_session_token
from datadrop.core.permissions import Permissions, resolve_permissions
from datadrop.core.tokens import TokenInvalid, verify_identity_token

logger = logging.getLogger("datadrop.auth")

SESSION_COOKIE = "session"


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: str | None
    name: str | None
    roles: list[str] = field(default_factory=list)
    permissions: Permissions = field(default_factory=Permissions)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "CurrentUser":
        roles = claims.get("roles")
        roles = list(roles) if isinstance(roles, (list, tuple)) else []
        email = claims.get("email")
        return cls(
            user_id=str(claims["sub"]),
            email=email,
            name=claims.get("name") or email,
            roles=roles,
            permissions=resolve_permissions(roles),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "email": self.email,
            "name": self.name,
            "roles": self.roles,
            **self.permissions.to_dict(),
        }


def require_user(request: Request) -> CurrentUser:
    """Dependency resolving the caller from a CLI bearer token or the browser session cookie."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            claims = verify_identity_token(auth_header[len("Bearer "):])
        except TokenInvalid as exc:
            logger.warning("event=cli_token_rejected error=%s", exc)
            raise Unauthorized("Invalid CLI token") from None
        return CurrentUser.from_claims(claims)

    session_token = request.cookies.get(SESSION_COOKIE)
    if not session_token:
        raise Unauthorized()
    try:
        claims = verify_session_token(session_token)
    except IdentityError as exc:
        logger.warning("event=session_token_rejected error=%s", exc)
        raise Unauthorized("Invalid token") from None
    if not claims.get("sub"):
        raise Unauthorized("Invalid token")
    return CurrentUser.from_claims(claims)
