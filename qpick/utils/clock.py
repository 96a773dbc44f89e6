"""Timestamp helpers.

All timestamps are stored as naive UTC datetimes, matching the DateTime
columns in ``qpick.db.models``.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> datetime | None:
    """
    Parse an ISO-8601 timestamp (or datetime) into a naive UTC datetime.

    Accepts a trailing ``Z`` and explicit offsets. Returns None when the
    value is missing or not a valid timestamp.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def isoformat(value: datetime | None) -> str | None:
    """Format a naive UTC datetime as an ISO string with a ``Z`` suffix."""
    if value is None:
        return None
    return value.isoformat() + "Z"
