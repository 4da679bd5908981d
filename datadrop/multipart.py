"""Chunked transfers: per-part locations, completion and abort."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlmodel import Session

from datadrop.config import UPLOAD_URL_EXPIRES_SECONDS
from datadrop.core.auth import CurrentUser
from datadrop.core.exceptions import MultipartRejected, ValidationFailed
from datadrop.core.metrics import UPLOAD_FINISHED, metrics
from datadrop.models import STATUS_ABORTED, STATUS_READY, FileRecord
from datadrop.records import get_owned_file

logger = logging.getLogger("datadrop.multipart")


def _require_open_session(record: FileRecord) -> None:
    if not record.has_open_multipart:
        raise ValidationFailed("No multipart upload in progress for this file")


def _parse_part_number(value: Any, field: str = "partNumber") -> int:
    if isinstance(value, bool):
        raise ValidationFailed("Invalid part number", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid part number", field=field) from None


def get_part_location(
    session: Session, storage, user: CurrentUser, file_id: str, part_number: Any
) -> dict[str, Any]:
    record = get_owned_file(session, user, file_id)
    _require_open_session(record)
    number = _parse_part_number(part_number)
    if number < 1 or number > record.part_count:
        raise ValidationFailed(
            f"Part number must be between 1 and {record.part_count}", field="partNumber"
        )
    upload_url = storage.presign_upload_part(
        record.bucket, record.s3_key, record.upload_id, number, UPLOAD_URL_EXPIRES_SECONDS
    )
    return {"uploadUrl": upload_url, "partNumber": number}


def _normalise_manifest(parts: Iterable[Any], part_count: int) -> list[tuple[int, str]]:
    """Check the client's manifest names every part exactly once; return it in order."""
    manifest: dict[int, str] = {}
    for entry in parts or []:
        if not isinstance(entry, dict):
            raise ValidationFailed("Each part needs a partNumber and an etag", field="parts")
        number = _parse_part_number(entry.get("partNumber"), field="parts")
        etag = entry.get("etag") or entry.get("ETag")
        if not etag or not isinstance(etag, str):
            raise ValidationFailed(f"Part {number} is missing its etag", field="parts")
        if number < 1 or number > part_count:
            raise ValidationFailed(f"Part {number} is outside 1..{part_count}", field="parts")
        if number in manifest:
            raise ValidationFailed(f"Part {number} is listed more than once", field="parts")
        manifest[number] = etag
    if len(manifest) != part_count:
        raise ValidationFailed(
            f"Expected {part_count} parts, received {len(manifest)}", field="parts"
        )
    return sorted(manifest.items())


def complete_upload(
    session: Session, storage, user: CurrentUser, file_id: str, parts: Iterable[Any]
) -> dict[str, Any]:
    """Assemble the uploaded parts. On any failure the record stays pending for a retry or abort."""
    record = get_owned_file(session, user, file_id)
    _require_open_session(record)
    manifest = _normalise_manifest(parts, record.part_count)

    try:
        storage.complete_multipart_upload(record.bucket, record.s3_key, record.upload_id, manifest)
    except MultipartRejected as exc:
        raise ValidationFailed("Upload could not be completed", code=exc.code) from exc

    record.status = STATUS_READY
    record.clear_multipart()
    session.add(record)
    session.commit()
    metrics.observe(UPLOAD_FINISHED)
    logger.info("event=multipart_completed file_id=%s parts=%s", file_id, len(manifest))
    return {"success": True, "fileId": file_id, "status": record.status}


def abort_upload(session: Session, storage, user: CurrentUser, file_id: str) -> dict[str, Any]:
    record = get_owned_file(session, user, file_id)
    if record.has_open_multipart:
        storage.abort_multipart_upload(record.bucket, record.s3_key, record.upload_id)
    record.status = STATUS_ABORTED
    record.clear_multipart()
    session.add(record)
    session.commit()
    logger.info("event=upload_aborted file_id=%s user_id=%s", file_id, user.user_id)
    return {"success": True, "fileId": file_id, "status": record.status}
