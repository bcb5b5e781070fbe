from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reviewsync.kernel.time import (
    UTC,
    coerce_utc,
    is_tz_aware,
    isoformat_z,
    parse_iso8601,
    parse_optional_iso8601,
    utc_now,
)


@pytest.mark.unit
def test_utc_now_is_tz_aware_utc():
    now = utc_now()
    assert is_tz_aware(now)
    assert now.utcoffset() == timedelta(0)


@pytest.mark.unit
def test_coerce_utc_converts_offsets():
    dt = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert coerce_utc(dt) == datetime(2026, 1, 1, 10, 0, tzinfo=UTC)


@pytest.mark.unit
def test_coerce_utc_rejects_naive_without_assumption():
    with pytest.raises(ValueError):
        coerce_utc(datetime(2026, 1, 1), assume_naive_is_utc=False)


@pytest.mark.unit
def test_isoformat_z_uses_z_suffix():
    assert isoformat_z(datetime(2026, 2, 10, 12, 0, 0, tzinfo=UTC)) == "2026-02-10T12:00:00Z"


@pytest.mark.unit
def test_parse_iso8601_truncates_nanoseconds():
    parsed = parse_iso8601("2024-03-01T10:00:00.123456789Z")
    assert parsed == datetime(2024, 3, 1, 10, 0, 0, 123456, tzinfo=UTC)


@pytest.mark.unit
def test_parse_iso8601_pads_short_fractions():
    assert parse_iso8601("2024-03-01T10:00:00.5Z").microsecond == 500000


@pytest.mark.unit
@pytest.mark.parametrize("value", [None, "", "   ", "not-a-date", 42])
def test_parse_optional_iso8601_is_lenient(value):
    assert parse_optional_iso8601(value) is None
