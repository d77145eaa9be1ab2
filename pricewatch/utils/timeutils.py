"""
Canonical timestamp handling.
Single source of truth: every timestamp compared or stored by the engine
goes through normalize_ts (aware UTC, whole seconds).
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

TimestampLike = Union[datetime, int, float, str]

# Injectable clock type: returns an aware UTC datetime
Clock = Callable[[], datetime]


def normalize_ts(value: TimestampLike) -> datetime:
    """
    Normalize any supported timestamp into an aware UTC datetime with second precision.

    Accepts:
        - datetime (naive values are assumed to already be UTC)
        - int/float epoch seconds
        - ISO-8601 strings ("2025-01-01T10:00:00Z", "2025-01-01 10:00:00")

    Raises:
        ValueError: unsupported or unparseable value
    """
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Unparseable timestamp: {value!r}") from e
    else:
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.replace(microsecond=0)


def utc_now() -> datetime:
    """Current time, normalized."""
    return normalize_ts(datetime.now(timezone.utc))


def to_db(value: TimestampLike) -> datetime:
    """Naive UTC datetime for storage columns (SQLite has no tz support)."""
    return normalize_ts(value).replace(tzinfo=None)


def from_db(value: Optional[datetime]) -> Optional[datetime]:
    """Read a stored timestamp back into the canonical representation."""
    if value is None:
        return None
    return normalize_ts(value)


def seconds_between(earlier: TimestampLike, later: TimestampLike) -> float:
    """Elapsed seconds from earlier to later (negative if reversed)."""
    return (normalize_ts(later) - normalize_ts(earlier)).total_seconds()


def shift(value: TimestampLike, seconds: float) -> datetime:
    """Move a timestamp by N seconds (negative goes back in time)."""
    return normalize_ts(normalize_ts(value) + timedelta(seconds=seconds))


def isoformat(value: TimestampLike) -> str:
    """Serialize for JSON payloads and files: 2025-01-01T10:00:00Z"""
    return normalize_ts(value).strftime("%Y-%m-%dT%H:%M:%SZ")
