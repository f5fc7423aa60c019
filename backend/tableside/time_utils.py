from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app, has_app_context


class SystemClock:
    """Wall clock in UTC (naive, canonical)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """
    Clock that only moves when told to.

    Install with `app.extensions["clock"] = FrozenClock(...)` to simulate
    token expiry, payment windows and order activity windows.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


_system_clock = SystemClock()


def get_clock():
    if has_app_context():
        clock = current_app.extensions.get("clock")
        if clock is not None:
            return clock
    return _system_clock


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return get_clock().now()


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
