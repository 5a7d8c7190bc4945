"""
Time helpers shared by the vendor decoders, the cache, and the repositories.

Key concepts:
  - All instants are timezone-aware UTC ``datetime`` objects.
  - The market-data vendor encodes timestamps as integer minutes since its
    own epoch. ``vendor_minutes_to_datetime`` converts them given the
    configured offset (minutes between the Unix epoch and the vendor epoch).
  - SQLite stores instants as ISO-8601 text; ``to_db`` / ``from_db`` keep the
    format consistent so lexical ordering matches chronological ordering.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES = 21_564_000


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def vendor_minutes_to_datetime(
    vendor_minutes: int,
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> datetime:
    """Convert a vendor time-series timestamp to a UTC ``datetime``.

    Args:
        vendor_minutes: Minutes since the vendor epoch.
        epoch_offset_minutes: Minutes from the Unix epoch to the vendor epoch.

    Returns:
        Timezone-aware UTC datetime.
    """
    return datetime.fromtimestamp(
        (vendor_minutes + epoch_offset_minutes) * 60, tz=timezone.utc
    )


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant for storage (fixed-width ISO-8601, UTC)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 instant back into an aware UTC datetime."""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))
