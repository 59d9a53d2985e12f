"""UTC helpers shared by the security services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

RANGE_WINDOWS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo (sqlite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def range_start(range_key: str, now: datetime | None = None) -> datetime:
    """Start of a dashboard range ("24h", "7d", "30d"); unknown keys fall back to 24h."""
    now = now or utcnow()
    return now - RANGE_WINDOWS.get(range_key, RANGE_WINDOWS["24h"])
