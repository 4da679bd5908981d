from __future__ import annotations

from urllib.parse import quote

from datadrop.config import (
    AWS_REGION,
    BUCKET_NAME,
    CDN_BUCKET_NAME,
    CDN_URL,
    CLOUDFRONT_DISTRIBUTION_ID,
    DELETION_QUEUE_NAME,
    REDIS_URL,
    S3_ENDPOINT_URL,
)
from datadrop.models import UPLOAD_TYPE_CDN

# Lazily created backend clients, one per process
_object_storage = None
_cdn_invalidator = None
_deletion_queue = None


def bucket_for(upload_type: str) -> str:
    return CDN_BUCKET_NAME if upload_type == UPLOAD_TYPE_CDN else BUCKET_NAME


def object_key_for(file_id: str, file_name: str, upload_type: str) -> str:
    """CDN objects sit at the bucket root so the edge path mirrors the key."""
    if upload_type == UPLOAD_TYPE_CDN:
        return f"{file_id}/{file_name}"
    return f"uploads/{file_id}/{file_name}"


def cdn_url_for(file_id: str, file_name: str) -> str:
    return f"{CDN_URL}/{file_id}/{quote(file_name)}"


def cdn_invalidation_paths(s3_key: str) -> list[str]:
    # The wildcard covers differently encoded variants of the file name
    file_id = s3_key.split("/")[0]
    return [f"/cdn/{s3_key}", f"/cdn/{file_id}/*"]


def get_object_storage():
    global _object_storage
    if _object_storage is None:
        from datadrop.services.s3 import S3Storage

        _object_storage = S3Storage(region=AWS_REGION, endpoint_url=S3_ENDPOINT_URL)
    return _object_storage


def get_cdn_invalidator():
    global _cdn_invalidator
    if _cdn_invalidator is None:
        from datadrop.services.cloudfront import CloudFrontInvalidator

        _cdn_invalidator = CloudFrontInvalidator(CLOUDFRONT_DISTRIBUTION_ID)
    return _cdn_invalidator


def get_deletion_queue():
    global _deletion_queue
    if _deletion_queue is None:
        from datadrop.services.deletion_queue import DeletionQueue

        _deletion_queue = DeletionQueue(DELETION_QUEUE_NAME, redis_url=REDIS_URL)
    return _deletion_queue
