"""Utility functions for tasksync."""

import random
from datetime import datetime, timezone
from typing import Optional

# =============================================================================
# Constants for remote layout
# =============================================================================

# Remote index document
INDEX_PATH: str = "/index.json"

# Single-document snapshot written by older app versions
LEGACY_SNAPSHOT_PATH: str = "/todo_data.json"

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds


# =============================================================================
# Timestamp utilities
# =============================================================================


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Older clients wrote naive local timestamps (no offset), so naive values
    are interpreted in the local timezone before conversion.

    Args:
        timestamp_str: ISO format timestamp string
            (e.g., "2025-01-15T10:30:00.000Z" or "2025-01-15T10:30:00.000")

    Returns:
        Aware datetime in UTC or None if parsing fails
    """
    if not timestamp_str or not isinstance(timestamp_str, str):
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"

        dt = datetime.fromisoformat(timestamp_str)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc)


def format_iso_timestamp(dt: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with a 'Z' suffix.

    Examples:
        >>> format_iso_timestamp(datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc))
        '2025-01-15T10:30:00Z'
    """
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential backoff with +/- 25% jitter.

    Args:
        base_delay: Delay for the first retry in seconds
        attempt: Current attempt number (0-based)

    Returns:
        Delay in seconds
    """
    delay = base_delay * (2**attempt)
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return delay + jitter
