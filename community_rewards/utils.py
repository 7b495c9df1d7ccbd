"""Shared utility helpers for community-rewards."""

from __future__ import annotations

from datetime import datetime, timezone


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse a stored TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # Ensure timezone-aware (SQLite CURRENT_TIMESTAMP is naive UTC)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: datetime | None = None) -> str:
    """Format *dt* (default: now) as the ISO string stored in the database."""
    if dt is None:
        dt = now_utc()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def hour_bucket(dt: datetime | None = None) -> str:
    """Return the UTC wall-clock hour key like '2026-03-01T14'."""
    if dt is None:
        dt = now_utc()
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H")
