"""In-process counters behind ``/metrics``, fed by domain events."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Dict

UPLOAD_SESSION_CREATED = "upload_session_created"
UPLOAD_FINISHED = "upload_finished"
DOWNLOAD_ISSUED = "download_issued"
FILE_DELETED = "file_deleted"
FILE_EXPIRED = "file_expired"

# Published name for each event in the snapshot
_SNAPSHOT_NAMES = {
    UPLOAD_SESSION_CREATED: "upload_sessions",
    UPLOAD_FINISHED: "uploads_completed",
    DOWNLOAD_ISSUED: "downloads",
    FILE_DELETED: "deleted",
    FILE_EXPIRED: "expired",
}


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Counter = Counter()
        self._bytes_declared = 0

    def observe(self, event: str, size_bytes: int = 0) -> None:
        if event not in _SNAPSHOT_NAMES:
            raise ValueError(f"Unknown metrics event: {event}")
        with self._lock:
            self._events[event] += 1
            self._bytes_declared += max(size_bytes, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            counters = {name: self._events[event] for event, name in _SNAPSHOT_NAMES.items()}
            counters["bytes_declared"] = self._bytes_declared
        return counters


metrics = MetricsStore()
