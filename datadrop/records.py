"""File record lifecycle: ownership lookups, listing and settings edits."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlmodel import Session, select

from datadrop.core.auth import CurrentUser
from datadrop.core.exceptions import NotFound, ValidationFailed
from datadrop.core.expiry import downloads_remaining, is_past, now_ts, resolve_retention
from datadrop.models import FileRecord

logger = logging.getLogger("datadrop.records")

UNCHANGED = object()
_UNLIMITED_VALUES = (None, "", "unlimited")


def get_owned_file(session: Session, user: CurrentUser, file_id: str) -> FileRecord:
    """Fetch a record owned by ``user``; other owners' ids look exactly like unknown ids."""
    record = session.get(FileRecord, file_id)
    if record is None or record.user_id != user.user_id:
        raise NotFound()
    return record


def describe_file(record: FileRecord, now: Optional[int] = None) -> dict[str, Any]:
    """Serialise a record with its read-time fields. Nothing computed here is stored."""
    payload = {
        "id": record.id,
        "userId": record.user_id,
        "fileName": record.file_name,
        "fileType": record.file_type,
        "fileSize": record.file_size,
        "s3Key": record.s3_key,
        "bucket": record.bucket,
        "uploadType": record.upload_type,
        "cdnUrl": record.cdn_url,
        "status": record.status,
        "createdAt": record.created_at,
        "expiresAt": None if record.is_cdn else record.expires_at,
        "maxDownloads": None if record.is_cdn else record.max_downloads,
        "downloadCount": record.download_count,
        "isExpired": (not record.is_cdn) and is_past(record.ttl, now),
        "downloadsRemaining": None if record.is_cdn else downloads_remaining(record.max_downloads, record.download_count),
    }
    if record.has_open_multipart:
        payload["multipart"] = {
            "uploadId": record.upload_id,
            "partCount": record.part_count,
            "partSize": record.part_size,
        }
    return payload


def list_files(session: Session, user: CurrentUser) -> list[dict[str, Any]]:
    records = session.exec(
        select(FileRecord)
        .where(FileRecord.user_id == user.user_id)
        .order_by(FileRecord.created_at.desc())
    ).all()
    now = now_ts()
    return [describe_file(record, now) for record in records]


def _parse_download_limit(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationFailed("maxDownloads must be a positive integer or null", field="maxDownloads")
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(
            "maxDownloads must be a positive integer or null", field="maxDownloads"
        ) from None
    if limit <= 0:
        raise ValidationFailed("maxDownloads must be a positive integer or null", field="maxDownloads")
    return limit


def edit_settings(
    session: Session,
    user: CurrentUser,
    file_id: str,
    expires_at: Optional[str] = None,
    expires_in_seconds: Any = None,
    max_downloads: Any = UNCHANGED,
) -> dict[str, Any]:
    """Update expiry and/or the download ceiling of a private file.

    ``max_downloads`` left as ``UNCHANGED`` keeps the current limit, a positive
    integer sets a new limit and restarts the count, and ``None``/``""``/
    ``"unlimited"`` drops both the limit and the counter.
    """
    record = get_owned_file(session, user, file_id)
    if record.is_cdn:
        raise ValidationFailed("CDN files cannot be edited")

    changed = False
    if expires_at or (expires_in_seconds is not None and expires_in_seconds != ""):
        # ttl and expires_at are always written as a pair
        record.ttl, record.expires_at = resolve_retention(expires_at, expires_in_seconds)
        changed = True

    if max_downloads is not UNCHANGED:
        if max_downloads in _UNLIMITED_VALUES:
            record.max_downloads = None
            record.download_count = None
        else:
            record.max_downloads = _parse_download_limit(max_downloads)
            record.download_count = 0
        changed = True

    if not changed:
        raise ValidationFailed("No valid updates provided")

    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(
        "event=settings_updated file_id=%s ttl=%s max_downloads=%s",
        record.id,
        record.ttl,
        record.max_downloads,
    )
    return {
        "success": True,
        "expiresAt": record.expires_at,
        "maxDownloads": record.max_downloads,
        "downloadsRemaining": downloads_remaining(record.max_downloads, record.download_count),
    }
