from __future__ import annotations

from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp."""
    return datetime.now(UTC)


def is_tz_aware(value: datetime) -> bool:
    return value.tzinfo is not None and value.utcoffset() is not None


def coerce_utc(value: datetime, *, assume_naive_is_utc: bool = True) -> datetime:
    """Coerce any datetime to tz-aware UTC.

    Adapters call this when receiving datetimes from untyped boundaries
    (provider payloads, JSON state blobs, legacy columns).
    """
    if is_tz_aware(value):
        return value.astimezone(UTC)

    if not assume_naive_is_utc:
        raise ValueError("Naive datetime cannot be coerced without an explicit assumption")

    return value.replace(tzinfo=UTC)


def isoformat_z(value: datetime) -> str:
    """RFC3339-ish UTC string with a `Z` suffix."""
    dt = coerce_utc(value)
    return dt.isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    """Parse ISO8601/RFC3339 timestamps into tz-aware UTC datetimes.

    Supports the `Z` suffix and the nanosecond fractions the provider emits
    (e.g. `2024-03-01T10:00:00.123456789Z`), which are truncated to microseconds.
    """
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    if "." in normalized:
        head, _, tail = normalized.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        normalized = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest
    dt = datetime.fromisoformat(normalized)
    return coerce_utc(dt)


def parse_optional_iso8601(value: object) -> datetime | None:
    """Lenient variant for payload fields: returns None for empty or malformed input."""
    if isinstance(value, datetime):
        return coerce_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_iso8601(value)
    except ValueError:
        return None
