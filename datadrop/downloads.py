"""Token-gated download path for private files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session

from datadrop.config import DOWNLOAD_URL_EXPIRES_SECONDS
from datadrop.core.exceptions import Gone, NotFound, ValidationFailed
from datadrop.core.expiry import downloads_remaining, is_past, iso_from_ts
from datadrop.core.metrics import DOWNLOAD_ISSUED, metrics
from datadrop.core.tokens import TokenExpired, TokenInvalid, verify_share_token
from datadrop.deletion import REASON_DOWNLOAD_LIMIT, ExplicitDeletion
from datadrop.models import UPLOAD_TYPE_PRIVATE, FileRecord

logger = logging.getLogger("datadrop.downloads")


@dataclass
class DownloadResult:
    payload: dict[str, Any]
    # Set for the one download that used up the last allowed slot
    deletion: Optional[ExplicitDeletion] = None


def _decode(token: str) -> dict[str, Any]:
    try:
        return verify_share_token(token)
    except TokenExpired:
        raise Gone("Link expired") from None
    except TokenInvalid:
        raise ValidationFailed("Invalid link") from None


def _load_downloadable(session: Session, claims: dict[str, Any]) -> FileRecord:
    record = session.get(FileRecord, claims["fileId"])
    if record is None:
        raise NotFound()
    if record.upload_type != UPLOAD_TYPE_PRIVATE:
        raise ValidationFailed("Invalid file type for this endpoint")
    # The ttl marker means gone even before the sweep physically removes the record
    if is_past(record.ttl):
        raise Gone("File has expired")
    if record.max_downloads and (record.download_count or 0) >= record.max_downloads:
        raise Gone("Download limit reached")
    return record


def resolve_download_info(session: Session, token: str) -> dict[str, Any]:
    claims = _decode(token)
    record = _load_downloadable(session, claims)
    return {
        "fileName": record.file_name,
        "fileSize": record.file_size,
        "requiresPassword": False,
        "expiresAt": iso_from_ts(claims["exp"]) if claims.get("exp") else None,
        "fileExpiresAt": record.expires_at,
        "downloadsRemaining": downloads_remaining(record.max_downloads, record.download_count),
        "maxDownloads": record.max_downloads,
    }


def _increment_download_count(session: Session, file_id: str) -> Optional[tuple[int, Optional[int]]]:
    """Atomically count one download, refusing once the ceiling is reached.

    Returns ``(new_count, max_downloads)``, or None when the update was refused.
    """
    current = func.coalesce(FileRecord.download_count, 0)
    statement = (
        update(FileRecord)
        .where(FileRecord.id == file_id)
        .where(or_(FileRecord.max_downloads.is_(None), current < FileRecord.max_downloads))
        .values(download_count=current + 1)
        .returning(FileRecord.download_count, FileRecord.max_downloads)
        .execution_options(synchronize_session=False)
    )
    row = session.execute(statement).first()
    session.commit()
    if row is None:
        return None
    return int(row[0]), row[1]


def perform_download(session: Session, storage, token: str) -> DownloadResult:
    claims = _decode(token)
    record = _load_downloadable(session, claims)
    file_id, owner_id, file_name = record.id, record.user_id, record.file_name

    download_url = storage.presign_get(
        record.bucket, record.s3_key, file_name, DOWNLOAD_URL_EXPIRES_SECONDS
    )

    counted = _increment_download_count(session, file_id)
    if counted is None:
        # Lost the race for the last slot, or the record vanished in between
        if session.get(FileRecord, file_id, populate_existing=True) is None:
            raise NotFound()
        raise Gone("Download limit reached")
    download_count, max_downloads = counted

    metrics.observe(DOWNLOAD_ISSUED)
    logger.info(
        "event=download_issued file_id=%s download_count=%s max_downloads=%s",
        file_id,
        download_count,
        max_downloads,
    )

    deletion = None
    if max_downloads and download_count == max_downloads:
        logger.info("event=download_limit_reached file_id=%s", file_id)
        deletion = ExplicitDeletion(file_id=file_id, user_id=owner_id, reason=REASON_DOWNLOAD_LIMIT)

    return DownloadResult(
        payload={
            "downloadUrl": download_url,
            "fileName": file_name,
            "downloadsRemaining": downloads_remaining(max_downloads, download_count),
        },
        deletion=deletion,
    )
