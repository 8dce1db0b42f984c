"""Wall-clock source injected into the store, handlers and scheduler."""

from __future__ import annotations

from datetime import datetime, timezone


class Clock:
    """Returns the current timezone-aware UTC time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
