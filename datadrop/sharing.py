from __future__ import annotations

import logging
from typing import Any, Optional

from sqlmodel import Session

from datadrop.config import FRONTEND_URL
from datadrop.core.auth import CurrentUser
from datadrop.core.exceptions import ValidationFailed
from datadrop.core.expiry import (
    DEFAULT_LINK_SECONDS,
    MIN_WINDOW_SECONDS,
    downloads_remaining,
    iso_from_ts,
    now_ts,
    requested_window,
)
from datadrop.core.tokens import create_share_token
from datadrop.records import get_owned_file

logger = logging.getLogger("datadrop.sharing")


def share_base_url() -> str:
    return FRONTEND_URL if FRONTEND_URL.startswith("https://") else f"https://{FRONTEND_URL}"


def clamp_link_window(requested_seconds: int, file_ttl: Optional[int], now: int) -> int:
    """Never let a link outlive its file, but never go below the minimum window.

    When the file has under a minute left the floor wins, so the link can
    outlast the file by a few seconds.
    """
    if file_ttl is None:
        return requested_seconds
    remaining = file_ttl - now
    if requested_seconds > remaining:
        return max(MIN_WINDOW_SECONDS, remaining)
    return requested_seconds


def create_share_link(
    session: Session,
    user: CurrentUser,
    file_id: str,
    expires_at: Optional[str] = None,
    expires_in_seconds: Any = None,
    now: Optional[int] = None,
) -> dict[str, Any]:
    record = get_owned_file(session, user, file_id)

    if record.is_cdn:
        return {
            "shareUrl": record.cdn_url,
            "type": "cdn",
            "expiresAt": None,
            "maxDownloads": None,
            "downloadsRemaining": None,
        }

    now = now_ts() if now is None else now
    seconds = requested_window(expires_at, expires_in_seconds, DEFAULT_LINK_SECONDS, now)
    if seconds < MIN_WINDOW_SECONDS:
        raise ValidationFailed(f"Link expiry must be at least {MIN_WINDOW_SECONDS} seconds")
    seconds = clamp_link_window(seconds, record.ttl, now)

    token = create_share_token(record.id, seconds, now=now)
    logger.info("event=share_link_created file_id=%s expires_in=%s", record.id, seconds)
    return {
        "shareUrl": f"{share_base_url()}/file?token={token}",
        "type": "private",
        "expiresAt": iso_from_ts(now + seconds),
        "fileExpiresAt": record.expires_at,
        "maxDownloads": record.max_downloads,
        "downloadsRemaining": downloads_remaining(record.max_downloads, record.download_count),
    }
