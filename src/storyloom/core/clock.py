"""Clock abstraction so throttling and timestamps stay injectable."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def monotonic(self) -> float:
        """Seconds from an arbitrary, never-decreasing origin."""

    def now(self) -> datetime:
        """Current wall-clock time (UTC), used only for record timestamps."""


class SystemClock:
    """Clock backed by ``time.monotonic`` and ``datetime.now``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Return an ISO-8601 string for a timestamp, forcing UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()
