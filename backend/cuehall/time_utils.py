from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


# Persisted datetimes are naive UTC. Devices speak unix seconds.

def utcnow() -> datetime:
    """Server-side 'now' as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def unix_now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a query-string datetime ("2026-03-01T18:00", "...Z", "...+07:00").

    Blank -> None. Offsets are folded into UTC; naive input is taken as UTC.
    Raises ValueError on garbage.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with whole seconds and a trailing 'Z'; naive input is UTC."""
    if dt is None:
        return None
    return _as_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"
