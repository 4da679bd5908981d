"""Upload sessions: transfer strategy, the pending record, and single-shot confirmation."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Optional

from sqlmodel import Session

from datadrop.config import UPLOAD_URL_EXPIRES_SECONDS, VERIFY_UPLOADS_ON_CONFIRM
from datadrop.core.auth import CurrentUser
from datadrop.core.exceptions import Conflict, FileTooLarge, Forbidden, ValidationFailed
from datadrop.core.expiry import downloads_remaining, iso_from_ts, now_ts, resolve_retention
from datadrop.core.metrics import UPLOAD_FINISHED, UPLOAD_SESSION_CREATED, metrics
from datadrop.core.permissions import CDN_ROLE, FILE_ROLE, GIB
from datadrop.models import (
    STATUS_PENDING,
    STATUS_UPLOADED,
    UPLOAD_TYPE_CDN,
    UPLOAD_TYPE_PRIVATE,
    FileRecord,
)
from datadrop.records import get_owned_file
from datadrop.storage import bucket_for, cdn_url_for, object_key_for

logger = logging.getLogger("datadrop.uploads")

MIB = 1024 * 1024
# S3 refuses single PUTs above 5 GiB, so larger objects go through multipart
MULTIPART_THRESHOLD_BYTES = 5 * GIB
MULTIPART_PART_SIZE_BYTES = 100 * MIB
MAX_MULTIPART_PARTS = 10000


def _validate_declaration(file_name: Any, file_type: Any, file_size: Any) -> int:
    if not file_name or not file_type:
        raise ValidationFailed("Missing fileName or fileType")
    if isinstance(file_size, bool):
        raise ValidationFailed("Missing or invalid fileSize", field="fileSize")
    try:
        size = int(file_size)
    except (TypeError, ValueError):
        raise ValidationFailed("Missing or invalid fileSize", field="fileSize") from None
    if size <= 0:
        raise ValidationFailed("Missing or invalid fileSize", field="fileSize")
    return size


def _authorize(user: CurrentUser, upload_type: str, file_size: int) -> None:
    permissions = user.permissions
    if upload_type == UPLOAD_TYPE_CDN and not permissions.can_upload_cdn:
        raise Forbidden(f"You don't have permission to upload CDN files. Required role: {CDN_ROLE}")
    if upload_type == UPLOAD_TYPE_PRIVATE and not permissions.can_upload_file:
        raise Forbidden(f"You don't have permission to upload private files. Required role: {FILE_ROLE}")
    if file_size > permissions.max_file_size_bytes:
        max_gb = permissions.max_file_size_bytes // GIB
        logger.warning(
            "event=upload_rejected reason=max_size user_id=%s size_bytes=%s limit_bytes=%s",
            user.user_id,
            file_size,
            permissions.max_file_size_bytes,
        )
        raise FileTooLarge(
            f"File size exceeds your limit of {max_gb}GB. Add fileSize_X role to increase.",
            maxFileSizeBytes=permissions.max_file_size_bytes,
        )


def _resolve_download_limit(max_downloads: Any) -> Optional[int]:
    if max_downloads in (None, "", 0):
        return None
    if isinstance(max_downloads, bool):
        raise ValidationFailed("maxDownloads must be an integer", field="maxDownloads")
    try:
        return max(1, int(max_downloads))
    except (TypeError, ValueError):
        raise ValidationFailed("maxDownloads must be an integer", field="maxDownloads") from None


def plan_parts(file_size: int, part_size: int = MULTIPART_PART_SIZE_BYTES) -> int:
    return math.ceil(file_size / part_size)


def begin_upload(
    session: Session,
    storage,
    user: CurrentUser,
    file_name: Any,
    file_type: Any,
    file_size: Any,
    upload_type: Optional[str] = None,
    expires_at: Optional[str] = None,
    expires_in_seconds: Any = None,
    max_downloads: Any = None,
) -> dict[str, Any]:
    """Authorise the declared file, persist a pending record and return its transfer plan."""
    size = _validate_declaration(file_name, file_type, file_size)
    upload_type = UPLOAD_TYPE_CDN if upload_type == UPLOAD_TYPE_CDN else UPLOAD_TYPE_PRIVATE
    _authorize(user, upload_type, size)

    is_cdn = upload_type == UPLOAD_TYPE_CDN
    ttl = file_expires_at = download_limit = None
    if not is_cdn:
        ttl, file_expires_at = resolve_retention(expires_at, expires_in_seconds)
        download_limit = _resolve_download_limit(max_downloads)

    part_count = plan_parts(size) if size > MULTIPART_THRESHOLD_BYTES else None
    if part_count is not None and part_count > MAX_MULTIPART_PARTS:
        raise ValidationFailed("File is too large for a multipart upload", field="fileSize")

    file_id = str(uuid.uuid4())
    bucket = bucket_for(upload_type)
    s3_key = object_key_for(file_id, file_name, upload_type)
    record = FileRecord(
        id=file_id,
        user_id=user.user_id,
        file_name=file_name,
        file_type=file_type,
        file_size=size,
        bucket=bucket,
        s3_key=s3_key,
        upload_type=upload_type,
        cdn_url=cdn_url_for(file_id, file_name) if is_cdn else None,
        status=STATUS_PENDING,
        created_at=iso_from_ts(now_ts()),
        ttl=ttl,
        expires_at=file_expires_at,
        max_downloads=download_limit,
        download_count=None if is_cdn else 0,
    )

    upload_url = None
    multipart = None
    if part_count is None:
        upload_url = storage.presign_put(bucket, s3_key, file_type, size, UPLOAD_URL_EXPIRES_SECONDS)
    else:
        record.upload_id = storage.create_multipart_upload(bucket, s3_key, file_type)
        record.part_count = part_count
        record.part_size = MULTIPART_PART_SIZE_BYTES
        multipart = {
            "uploadId": record.upload_id,
            "partCount": part_count,
            "partSize": MULTIPART_PART_SIZE_BYTES,
        }

    session.add(record)
    session.commit()

    metrics.observe(UPLOAD_SESSION_CREATED, size_bytes=size)
    logger.info(
        "event=upload_session_created file_id=%s user_id=%s upload_type=%s size_bytes=%s strategy=%s",
        file_id,
        user.user_id,
        upload_type,
        size,
        "multipart" if multipart else "single",
    )

    return {
        "uploadUrl": upload_url,
        "fileId": file_id,
        "s3Key": s3_key,
        "cdnUrl": record.cdn_url,
        "expiresAt": file_expires_at,
        "maxDownloads": download_limit,
        "downloadsRemaining": downloads_remaining(download_limit, 0),
        "maxFileSizeBytes": user.permissions.max_file_size_bytes,
        "multipart": multipart,
    }


def confirm_upload(session: Session, storage, user: CurrentUser, file_id: str) -> dict[str, Any]:
    """Mark a single-shot upload as uploaded.

    The client's word is taken unless VERIFY_UPLOADS_ON_CONFIRM is set, in which
    case the object must exist with the declared size.
    """
    record = get_owned_file(session, user, file_id)
    if record.has_open_multipart:
        raise ValidationFailed("Multipart uploads are finished with the complete call")
    if record.status == STATUS_UPLOADED:
        return {"success": True}
    if record.status != STATUS_PENDING:
        raise Conflict(f"Upload cannot be confirmed from status {record.status}")

    if VERIFY_UPLOADS_ON_CONFIRM:
        size = storage.object_size(record.bucket, record.s3_key)
        if size != record.file_size:
            logger.warning(
                "event=confirm_rejected file_id=%s declared=%s stored=%s", file_id, record.file_size, size
            )
            raise Conflict("Uploaded object is missing or does not match the declared size")

    record.status = STATUS_UPLOADED
    session.add(record)
    session.commit()
    metrics.observe(UPLOAD_FINISHED)
    logger.info("event=upload_confirmed file_id=%s user_id=%s", file_id, user.user_id)
    return {"success": True}
