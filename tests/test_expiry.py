import pytest

from datadrop.core.exceptions import ValidationFailed
from datadrop.core.expiry import (
    DEFAULT_RETENTION_SECONDS,
    MAX_RETENTION_SECONDS,
    MIN_WINDOW_SECONDS,
    downloads_remaining,
    is_past,
    iso_from_ts,
    parse_instant,
    requested_window,
    resolve_retention,
)

NOW = 1_700_000_000


def test_iso_round_trips_through_parse():
    iso = iso_from_ts(NOW)
    assert iso.endswith("Z")
    assert parse_instant(iso) == NOW


def test_naive_instant_is_utc():
    assert parse_instant("2023-11-14T22:13:20") == NOW


def test_bad_instant_names_the_field():
    with pytest.raises(ValidationFailed) as excinfo:
        parse_instant("next tuesday")
    assert excinfo.value.to_payload()["field"] == "expiresAt"


def test_explicit_instant_wins_over_relative_seconds():
    assert requested_window(iso_from_ts(NOW + 600), 90, 1000, NOW) == 600
    assert requested_window(None, 90, 1000, NOW) == 90
    assert requested_window(None, None, 1000, NOW) == 1000


def test_retention_defaults_to_seven_days():
    ttl, iso = resolve_retention(None, None, now=NOW)
    assert ttl == NOW + DEFAULT_RETENTION_SECONDS
    assert iso == iso_from_ts(ttl)


@pytest.mark.parametrize(
    "requested, expected",
    [
        (10, MIN_WINDOW_SECONDS),
        (3600, 3600),
        (90 * 24 * 3600, MAX_RETENTION_SECONDS),
    ],
)
def test_retention_is_clamped(requested, expected):
    ttl, _ = resolve_retention(None, requested, now=NOW)
    assert ttl - NOW == expected


def test_is_past_and_downloads_remaining():
    assert is_past(NOW - 1, now=NOW)
    assert not is_past(NOW, now=NOW)
    assert not is_past(None, now=NOW)
    assert downloads_remaining(None, 4) is None
    assert downloads_remaining(3, 1) == 2
    assert downloads_remaining(3, 7) == 0
