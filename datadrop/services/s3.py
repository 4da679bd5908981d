from __future__ import annotations

import logging
from typing import Iterable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from datadrop.core.exceptions import MultipartRejected, StorageError

logger = logging.getLogger("datadrop.s3")

# Error codes S3 returns when the client's part manifest is at fault
_MANIFEST_ERROR_CODES = {"InvalidPart", "InvalidPartOrder", "NoSuchUpload", "EntityTooSmall"}


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "ClientError")
    return type(exc).__name__


class S3Storage:
    """A thin wrapper around the boto3 S3 client: presigned locations, multipart, deletes."""

    def __init__(self, region: Optional[str] = None, endpoint_url: Optional[str] = None):
        self._client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(signature_version="s3v4"),
        )

    def _presign(self, operation: str, params: dict, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(operation, Params=params, ExpiresIn=expires_in)
        except (BotoCoreError, ClientError) as exc:
            logger.error("event=s3_presign_failure operation=%s key=%s error=%s", operation, params.get("Key"), exc)
            raise StorageError(f"Failed to presign {operation}: {exc}", _error_code(exc)) from exc

    def presign_put(self, bucket: str, key: str, content_type: str, content_length: int, expires_in: int) -> str:
        # Content type and length are part of the signature, so S3 refuses a mismatched body
        return self._presign(
            "put_object",
            {"Bucket": bucket, "Key": key, "ContentType": content_type, "ContentLength": content_length},
            expires_in,
        )

    def presign_get(self, bucket: str, key: str, filename: str, expires_in: int) -> str:
        return self._presign(
            "get_object",
            {
                "Bucket": bucket,
                "Key": key,
                "ResponseContentDisposition": f'attachment; filename="{filename}"',
            },
            expires_in,
        )

    def presign_upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, expires_in: int) -> str:
        return self._presign(
            "upload_part",
            {"Bucket": bucket, "Key": key, "UploadId": upload_id, "PartNumber": part_number},
            expires_in,
        )

    def create_multipart_upload(self, bucket: str, key: str, content_type: str) -> str:
        try:
            response = self._client.create_multipart_upload(Bucket=bucket, Key=key, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            logger.error("event=s3_multipart_create_failure key=%s error=%s", key, exc)
            raise StorageError(f"Failed to open multipart upload: {exc}", _error_code(exc)) from exc
        return response["UploadId"]

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Iterable[tuple[int, str]]
    ) -> None:
        manifest = [{"PartNumber": number, "ETag": etag} for number, etag in parts]
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": manifest},
            )
        except ClientError as exc:
            code = _error_code(exc)
            logger.warning("event=s3_multipart_complete_failure key=%s code=%s error=%s", key, code, exc)
            if code in _MANIFEST_ERROR_CODES:
                raise MultipartRejected(str(exc), code) from exc
            raise StorageError(f"Failed to complete multipart upload: {exc}", code) from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to complete multipart upload: {exc}", _error_code(exc)) from exc

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except ClientError as exc:
            if _error_code(exc) == "NoSuchUpload":
                logger.info("event=s3_multipart_already_gone key=%s upload_id=%s", key, upload_id)
                return
            raise StorageError(f"Failed to abort multipart upload: {exc}", _error_code(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to abort multipart upload: {exc}", _error_code(exc)) from exc

    def object_size(self, bucket: str, key: str) -> Optional[int]:
        """Size of a stored object, or None when it does not exist."""
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise StorageError(f"Failed to inspect object: {exc}", _error_code(exc)) from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to inspect object: {exc}", _error_code(exc)) from exc
        return int(response["ContentLength"])

    def delete_object(self, bucket: str, key: str) -> None:
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error("event=s3_delete_failure bucket=%s key=%s error=%s", bucket, key, exc)
            raise StorageError(f"Failed to delete object: {exc}", _error_code(exc)) from exc
