"""Session introspection and the CLI device-login handshake.

The CLI opens a request and polls it; the user approves it from a logged-in
browser, which mints a long-lived identity token for the CLI to collect.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from datadrop.config import FRONTEND_URL
from datadrop.core.auth import SESSION_COOKIE, CurrentUser, require_user
from datadrop.core.exceptions import NotFound, ValidationFailed
from datadrop.core.expiry import iso_from_ts, now_ts
from datadrop.core.tokens import IDENTITY_TOKEN_LIFETIME_SECONDS, create_identity_token
from datadrop.db import get_session
from datadrop.models import CliAuthRequest

router = APIRouter(prefix="/api/auth")

logger = logging.getLogger("datadrop.auth")

CLI_LOGIN_TTL_SECONDS = 600
CLI_PICKUP_TTL_SECONDS = 120


class CliAuthorizeRequest(BaseModel):
    code: Optional[str] = None


def _live_request(session: Session, code: str) -> CliAuthRequest:
    record = session.get(CliAuthRequest, f"cli_{code}")
    if record is None or record.ttl < now_ts():
        raise NotFound("Invalid or expired code")
    return record


@router.get("/verify")
def verify(user: CurrentUser = Depends(require_user)):
    return user.to_dict()


@router.post("/logout")
def logout():
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE, path="/")
    return response


@router.post("/cli/login")
def cli_login(session: Session = Depends(get_session)):
    code = str(uuid.uuid4())
    display_code = code[:8].upper()
    session.add(
        CliAuthRequest(
            id=f"cli_{code}",
            display_code=display_code,
            status="pending",
            ttl=now_ts() + CLI_LOGIN_TTL_SECONDS,
        )
    )
    session.commit()
    logger.info("event=cli_login_started display_code=%s", display_code)
    return {
        "code": code,
        "displayCode": display_code,
        "authUrl": f"{FRONTEND_URL}?cli_auth={code}",
        "expiresIn": CLI_LOGIN_TTL_SECONDS,
    }


@router.get("/cli/login/{code}")
def cli_login_poll(code: str, session: Session = Depends(get_session)):
    record = _live_request(session, code)
    if record.status == "pending":
        return {"status": "pending"}

    # The token is handed out once
    payload = {
        "status": "authorized",
        "token": record.cli_token,
        "expiresAt": record.token_expires_at,
        "user": {"userId": record.user_id, "email": record.email, "name": record.name},
    }
    session.delete(record)
    session.commit()
    logger.info("event=cli_login_collected user_id=%s", record.user_id)
    return payload


@router.post("/cli/authorize")
def cli_authorize(
    body: CliAuthorizeRequest,
    user: CurrentUser = Depends(require_user),
    session: Session = Depends(get_session),
):
    if not body.code:
        raise ValidationFailed("Missing code", field="code")
    record = _live_request(session, body.code)
    if record.status != "pending":
        raise NotFound("Invalid or expired code")

    now = now_ts()
    record.cli_token = create_identity_token(user.user_id, user.email, user.name, user.roles, now=now)
    record.token_expires_at = iso_from_ts(now + IDENTITY_TOKEN_LIFETIME_SECONDS)
    record.status = "authorized"
    record.user_id = user.user_id
    record.email = user.email
    record.name = user.name
    record.ttl = now + CLI_PICKUP_TTL_SECONDS
    session.add(record)
    session.commit()
    logger.info("event=cli_login_authorized user_id=%s", user.user_id)
    return {"success": True, "message": "CLI authorized successfully"}
