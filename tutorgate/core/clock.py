"""UTC helpers shared by the services.

All timestamps are stored and compared as timezone-aware UTC. SQLite hands
``DateTime(timezone=True)`` values back naive, so anything read from the
store goes through ``as_utc`` before comparison.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return utc_now()
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
