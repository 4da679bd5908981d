import pytest

from datadrop.core import rate_limit
from datadrop.core.metrics import DOWNLOAD_ISSUED, UPLOAD_SESSION_CREATED, MetricsStore


def test_snapshot_counts_events_and_declared_bytes():
    store = MetricsStore()
    store.observe(UPLOAD_SESSION_CREATED, size_bytes=100)
    store.observe(UPLOAD_SESSION_CREATED, size_bytes=50)
    store.observe(DOWNLOAD_ISSUED)

    snapshot = store.snapshot()
    assert snapshot["upload_sessions"] == 2
    assert snapshot["bytes_declared"] == 150
    assert snapshot["downloads"] == 1
    assert snapshot["deleted"] == 0
    assert snapshot["expired"] == 0


def test_unknown_event_is_rejected():
    with pytest.raises(ValueError):
        MetricsStore().observe("file_teleported")


def test_memory_window_resets_on_the_next_window(monkeypatch):
    clock = [120.0]
    monkeypatch.setattr(rate_limit, "monotonic", lambda: clock[0])
    limiter = rate_limit.RateLimiter(2, window_seconds=60, redis_url="")

    assert limiter.hit("client") == (True, 60)
    assert limiter.hit("client")[0] is True
    clock[0] = 150.0
    assert limiter.hit("client") == (False, 30)
    assert limiter.hit("other")[0] is True

    clock[0] = 180.0
    assert limiter.hit("client")[0] is True
