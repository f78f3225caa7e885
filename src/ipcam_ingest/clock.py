"""Wall-clock and monotonic time sources used by the stream worker."""
from __future__ import annotations

import time
from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    """Time source consulted by schedules, segment names and rate tracking."""

    def now(self) -> datetime:  # pragma: no cover - interface only
        ...

    def monotonic(self) -> float:  # pragma: no cover - interface only
        ...


class SystemClock:
    """Clock backed by the host's local time."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()


__all__ = ["Clock", "SystemClock"]
