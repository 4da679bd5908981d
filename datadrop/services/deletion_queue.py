from __future__ import annotations

import json
import logging
import queue
from typing import Any, Optional

import redis

from datadrop.core.exceptions import StorageError

logger = logging.getLogger("datadrop.queue")


class DeletionQueue:
    """At-least-once queue of small JSON deletion triggers.

    With Redis, messages move from the main list to a processing list on receipt
    and are only dropped on ``ack``; ``release`` puts them back for redelivery.
    Without ``redis_url`` an in-process queue is used, which suits a single
    worker process and tests.
    """

    def __init__(self, name: str, redis_url: str = ""):
        self.name = name
        self.processing_name = f"{name}:processing"
        self._redis = redis.from_url(redis_url) if redis_url else None
        self._local: "queue.Queue[str]" = queue.Queue()

    def publish(self, message: dict[str, Any]) -> None:
        body = json.dumps(message, sort_keys=True)
        if self._redis is None:
            self._local.put(body)
        else:
            try:
                self._redis.rpush(self.name, body)
            except redis.RedisError as exc:
                raise StorageError(f"Failed to publish deletion trigger: {exc}", "QUEUE_ERROR") from exc
        logger.info("event=deletion_queued message=%s", body)

    def receive(self, max_messages: int = 10) -> list[tuple[str, dict[str, Any]]]:
        """Return up to ``max_messages`` as ``(handle, message)`` pairs."""
        received = []
        for _ in range(max_messages):
            body = self._pop()
            if body is None:
                break
            try:
                received.append((body, json.loads(body)))
            except json.JSONDecodeError:
                logger.error("event=deletion_message_malformed body=%s", body)
                self.ack(body)
        return received

    def _pop(self) -> Optional[str]:
        if self._redis is None:
            try:
                return self._local.get_nowait()
            except queue.Empty:
                return None
        try:
            body = self._redis.lmove(self.name, self.processing_name, "LEFT", "RIGHT")
        except redis.RedisError as exc:
            raise StorageError(f"Failed to receive deletion triggers: {exc}", "QUEUE_ERROR") from exc
        if body is None:
            return None
        return body.decode("utf-8") if isinstance(body, bytes) else body

    def ack(self, handle: str) -> None:
        if self._redis is not None:
            self._redis.lrem(self.processing_name, 1, handle)

    def release(self, handle: str) -> None:
        if self._redis is None:
            self._local.put(handle)
            return
        pipe = self._redis.pipeline()
        pipe.lrem(self.processing_name, 1, handle)
        pipe.rpush(self.name, handle)
        pipe.execute()

    def pending(self) -> int:
        if self._redis is None:
            return self._local.qsize()
        return int(self._redis.llen(self.name))

    def requeue_inflight(self) -> int:
        """Return messages a stopped consumer left in the processing list to the queue.

        Called once when the consumer starts; those messages were received but
        never acked, so they are delivered again.
        """
        if self._redis is None:
            return 0
        moved = 0
        try:
            while self._redis.lmove(self.processing_name, self.name, "RIGHT", "LEFT") is not None:
                moved += 1
        except redis.RedisError as exc:
            raise StorageError(f"Failed to requeue in-flight deletion triggers: {exc}", "QUEUE_ERROR") from exc
        if moved:
            logger.warning("event=deletion_inflight_requeued count=%s", moved)
        return moved
