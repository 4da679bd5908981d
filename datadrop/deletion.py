"""Deletion Coordinator.

Two trigger kinds feed one teardown:

* ``ExplicitDeletion`` comes from an owner's delete request or from the download
  path when the last allowed download is used. The record is re-fetched and its
  owner re-checked before anything is removed.
* ``ExpiredDeletion`` comes from TTL reclamation. The record is already gone, so
  the trigger carries its before-image and no ownership check applies.

Storage is always removed before metadata, so a crash in between leaves a
retryable orphan record rather than an unreferenced object. Cache invalidation
is best effort and never blocks the deletion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy import delete
from sqlmodel import Session

from datadrop.core.auth import CurrentUser
from datadrop.core.exceptions import StorageError
from datadrop.core.metrics import FILE_DELETED, FILE_EXPIRED, metrics
from datadrop.models import UPLOAD_TYPE_CDN, FileRecord
from datadrop.records import get_owned_file
from datadrop.storage import bucket_for, cdn_invalidation_paths

logger = logging.getLogger("datadrop.deletion")

REASON_USER_REQUEST = "user_request"
REASON_DOWNLOAD_LIMIT = "download_limit_reached"


@dataclass(frozen=True)
class FileSnapshot:
    """The fields teardown needs, captured from a live record or a before-image."""

    id: str
    user_id: Optional[str]
    upload_type: str
    s3_key: str
    bucket: Optional[str] = None
    upload_id: Optional[str] = None

    @property
    def storage_bucket(self) -> str:
        return self.bucket or bucket_for(self.upload_type)

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileSnapshot":
        return cls(
            id=record.id,
            user_id=record.user_id,
            upload_type=record.upload_type,
            s3_key=record.s3_key,
            bucket=record.bucket,
            upload_id=record.upload_id,
        )

    @classmethod
    def from_image(cls, image: dict[str, Any]) -> "FileSnapshot":
        """Build from a before-image using either the column or the API field names."""
        return cls(
            id=image.get("id"),
            user_id=image.get("user_id") or image.get("userId"),
            upload_type=image.get("upload_type") or image.get("uploadType"),
            s3_key=image.get("s3_key") or image.get("s3Key"),
            bucket=image.get("bucket"),
            upload_id=image.get("upload_id") or image.get("uploadId"),
        )


@dataclass(frozen=True)
class ExplicitDeletion:
    file_id: str
    user_id: str
    reason: str = REASON_USER_REQUEST

    def to_message(self) -> dict[str, Any]:
        message = {"fileId": self.file_id, "userId": self.user_id}
        if self.reason != REASON_USER_REQUEST:
            message["reason"] = self.reason
        return message

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "ExplicitDeletion":
        return cls(
            file_id=message["fileId"],
            user_id=message["userId"],
            reason=message.get("reason") or REASON_USER_REQUEST,
        )


@dataclass(frozen=True)
class ExpiredDeletion:
    before_image: FileSnapshot


DeletionTrigger = Union[ExplicitDeletion, ExpiredDeletion]


class DeletionCoordinator:
    def __init__(self, storage, invalidator):
        self.storage = storage
        self.invalidator = invalidator

    def handle(self, session: Session, trigger: DeletionTrigger) -> dict[str, Any]:
        if isinstance(trigger, ExpiredDeletion):
            return self._handle_expired(trigger.before_image)
        return self._handle_explicit(session, trigger)

    def _handle_explicit(self, session: Session, trigger: ExplicitDeletion) -> dict[str, Any]:
        logger.info(
            "event=deletion_started file_id=%s user_id=%s reason=%s",
            trigger.file_id,
            trigger.user_id,
            trigger.reason,
        )
        record = session.get(FileRecord, trigger.file_id)
        if record is None:
            logger.info("event=deletion_skipped reason=not_found file_id=%s", trigger.file_id)
            return {"fileId": trigger.file_id, "status": "not_found"}
        if record.user_id != trigger.user_id:
            logger.error(
                "event=deletion_refused reason=owner_mismatch file_id=%s user_id=%s",
                trigger.file_id,
                trigger.user_id,
            )
            return {"fileId": trigger.file_id, "status": "unauthorized"}

        self._teardown_storage(FileSnapshot.from_record(record))
        # Statement delete so a record removed concurrently is not an error
        session.execute(delete(FileRecord).where(FileRecord.id == trigger.file_id))
        session.commit()
        metrics.observe(FILE_DELETED)
        logger.info("event=deletion_completed file_id=%s", trigger.file_id)
        return {"fileId": trigger.file_id, "status": "deleted"}

    def _handle_expired(self, snapshot: FileSnapshot) -> dict[str, Any]:
        logger.info("event=ttl_deletion_started file_id=%s", snapshot.id)
        self._teardown_storage(snapshot)
        metrics.observe(FILE_EXPIRED)
        logger.info("event=ttl_deletion_completed file_id=%s", snapshot.id)
        return {"fileId": snapshot.id, "status": "deleted_ttl"}

    def _teardown_storage(self, snapshot: FileSnapshot) -> None:
        # Storage failures propagate so the trigger is redelivered
        if snapshot.upload_id:
            # delete_object does not remove uploaded parts
            self.storage.abort_multipart_upload(snapshot.storage_bucket, snapshot.s3_key, snapshot.upload_id)
        self.storage.delete_object(snapshot.storage_bucket, snapshot.s3_key)
        if snapshot.upload_type == UPLOAD_TYPE_CDN:
            self._invalidate(snapshot)

    def _invalidate(self, snapshot: FileSnapshot) -> None:
        paths = cdn_invalidation_paths(snapshot.s3_key)
        try:
            self.invalidator.invalidate(paths, reference=snapshot.s3_key)
        except Exception as exc:
            logger.error("event=cdn_invalidation_failure file_id=%s paths=%s error=%s", snapshot.id, paths, exc)


def request_deletion(session: Session, deletion_queue, user: CurrentUser, file_id: str) -> dict[str, Any]:
    """Queue an owner's delete request; the worker performs the teardown."""
    get_owned_file(session, user, file_id)
    deletion_queue.publish(ExplicitDeletion(file_id=file_id, user_id=user.user_id).to_message())
    return {"success": True, "message": "File deletion queued"}


def enqueue_deletion(deletion_queue, trigger: ExplicitDeletion) -> None:
    """Background task for download-triggered deletion; failures only reach the log."""
    try:
        deletion_queue.publish(trigger.to_message())
    except StorageError as exc:
        logger.error("event=deletion_enqueue_failure file_id=%s error=%s", trigger.file_id, exc)
