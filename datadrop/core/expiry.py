"""Time-window helpers shared by uploads, settings edits and share links.

Instants travel as ISO-8601 strings in the API and as epoch seconds in the
``ttl`` column; both forms are always derived from the same integer.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from datadrop.core.exceptions import ValidationFailed

MIN_WINDOW_SECONDS = 60
MAX_RETENTION_SECONDS = 30 * 24 * 60 * 60
DEFAULT_RETENTION_SECONDS = 7 * 24 * 60 * 60
DEFAULT_LINK_SECONDS = 24 * 60 * 60


def now_ts() -> int:
    return int(time.time())


def iso_from_ts(ts: float) -> str:
    moment = datetime.fromtimestamp(ts, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_instant(value: str, field: str = "expiresAt") -> int:
    """Parse an ISO-8601 instant into epoch seconds. Naive values are UTC."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed("Invalid expiry date format", field=field)
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationFailed("Invalid expiry date format", field=field) from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def parse_seconds(value: Any, field: str = "expiresInSeconds") -> int:
    if isinstance(value, bool):
        raise ValidationFailed("Expected a number of seconds", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Expected a number of seconds", field=field) from None


def requested_window(
    expires_at: Optional[str],
    expires_in_seconds: Any,
    default_seconds: int,
    now: int,
) -> int:
    """Seconds from ``now`` the caller asked for. The explicit instant wins."""
    if expires_at:
        return parse_instant(expires_at) - now
    if expires_in_seconds is not None and expires_in_seconds != "":
        return parse_seconds(expires_in_seconds)
    return default_seconds


def clamp_retention(seconds: int) -> int:
    return max(MIN_WINDOW_SECONDS, min(seconds, MAX_RETENTION_SECONDS))


def resolve_retention(
    expires_at: Optional[str],
    expires_in_seconds: Any,
    now: Optional[int] = None,
) -> tuple[int, str]:
    """Return the ``(ttl, expires_at)`` pair for a private file."""
    now = now_ts() if now is None else now
    seconds = clamp_retention(
        requested_window(expires_at, expires_in_seconds, DEFAULT_RETENTION_SECONDS, now)
    )
    ttl = now + seconds
    return ttl, iso_from_ts(ttl)


def is_past(ttl: Optional[int], now: Optional[int] = None) -> bool:
    if ttl is None:
        return False
    now = now_ts() if now is None else now
    return ttl < now


def downloads_remaining(max_downloads: Optional[int], download_count: Optional[int]) -> Optional[int]:
    if not max_downloads:
        return None
    return max(0, max_downloads - (download_count or 0))
