from __future__ import annotations

import logging
import threading
from time import monotonic
from typing import Dict, Tuple

import redis

from datadrop.config import REDIS_URL

logger = logging.getLogger("datadrop.rate_limit")


class RateLimiter:
    """Fixed window limiter for the public download endpoints.

    Counts live in Redis when ``REDIS_URL`` is configured so every worker process
    shares one window per client; otherwise they are kept in-process.
    """

    def __init__(self, limit: int, window_seconds: int = 60, redis_url: str = REDIS_URL) -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds
        self._redis = redis.from_url(redis_url) if redis_url else None
        self._clients: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> Tuple[bool, int]:
        """
        Register a hit for the given key.
        Returns (allowed, retry_after_seconds).
        """
        if self._redis is not None:
            try:
                return self._hit_redis(key)
            except redis.RedisError as exc:
                logger.warning("event=rate_limit_redis_unavailable error=%s", exc)
        return self._hit_memory(key)

    def _hit_redis(self, key: str) -> Tuple[bool, int]:
        redis_key = f"datadrop:rate:{key}"
        pipe = self._redis.pipeline()
        # The window starts with the first hit; later hits only increment
        pipe.set(redis_key, 0, ex=self.window_seconds, nx=True)
        pipe.incr(redis_key)
        pipe.ttl(redis_key)
        _, count, ttl = pipe.execute()
        retry_after = max(int(ttl), 1)
        if int(count) > self.limit:
            return False, retry_after
        return True, retry_after

    def _hit_memory(self, key: str) -> Tuple[bool, int]:
        now = monotonic()
        # Windows are aligned to multiples of window_seconds on the monotonic clock
        window = int(now // self.window_seconds)
        retry_after = max(int((window + 1) * self.window_seconds - now), 1)
        with self._lock:
            seen_window, count = self._clients.get(key, (window, 0))
            if seen_window != window:
                count = 0
            if count >= self.limit:
                return False, retry_after
            self._clients[key] = (window, count + 1)
        return True, retry_after
