"""Time utilities for timezone-aware UTC datetimes and their stored text form.

Timestamps are persisted as ISO-8601 text carrying a UTC offset. Older rows may
hold local ``YYYY-MM-DD HH:MM:SS[.ffffff]`` text without an offset; those are
read back as UTC.
"""

from datetime import UTC, datetime

LOCAL_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime for defaults and onupdate hooks."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_storage(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_with_offset(text: str) -> datetime | None:
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(UTC)


def parse_timestamp(value) -> datetime:
    """Parse a stored timestamp, trying RFC3339 first and then the local formats.

    Raises ValueError when no format matches; callers must not substitute a
    default date.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    text = value.strip()
    parsed = _parse_with_offset(text)
    if parsed is not None:
        return parsed
    for fmt in LOCAL_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised timestamp format: {value!r}")
