from __future__ import annotations

import logging
import time
from typing import Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from datadrop.core.exceptions import StorageError

logger = logging.getLogger("datadrop.cloudfront")


class CloudFrontInvalidator:
    """Path-based cache invalidation for the public CDN distribution."""

    def __init__(self, distribution_id: str):
        self.distribution_id = distribution_id
        self._client = boto3.client("cloudfront")

    def invalidate(self, paths: Sequence[str], reference: str) -> None:
        if not self.distribution_id:
            logger.info("event=cdn_invalidation_skipped reason=no_distribution paths=%s", list(paths))
            return
        try:
            self._client.create_invalidation(
                DistributionId=self.distribution_id,
                InvalidationBatch={
                    "CallerReference": f"{int(time.time() * 1000)}-{reference}",
                    "Paths": {"Quantity": len(paths), "Items": list(paths)},
                },
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"CloudFront invalidation failed: {exc}", "CDN_INVALIDATION_ERROR") from exc
        logger.info("event=cdn_invalidation_created paths=%s", list(paths))
