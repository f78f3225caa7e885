"""Bounded log of notable stream events (connects, segments, motion)."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass
from pathlib import Path

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"


@dataclass(frozen=True, slots=True)
class SystemLogEntry:
    """One event. ``category`` is ``"stream:<name>"`` for worker events."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    @property
    def stream(self) -> str | None:
        prefix, _, name = self.category.partition(":")
        return name if prefix == "stream" and name else None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


class SystemLog:
    """Keep the most recent events in memory and optionally mirror them to disk.

    Only ``max_entries`` events are retained, but per-category event totals
    are kept for the lifetime of the log so a status page can show how many
    reconnects or segments a stream has seen since start-up. When ``path`` is
    given every event is appended to it as one JSON object per line.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        clock: Clock | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._clock = clock or SystemClock()
        self._entries: deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._totals: dict[str, Counter[str]] = {}
        self._lock = threading.Lock()
        self._path = self._prepare(Path(path)) if path is not None else None

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Store an event and return it; ``None`` metadata values are dropped."""

        name = category.strip() if isinstance(category, str) else ""
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SystemLogEntry(
            timestamp=self._clock.now().timestamp(),
            category=name or DEFAULT_CATEGORY,
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._totals.setdefault(entry.category, Counter())[event] += 1
            if self._path is not None:
                self._write_line(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        event: str | None = None,
        since: float | None = None,
    ) -> list[SystemLogEntry]:
        """Return retained entries oldest first, filtered and cut to the last *limit*."""

        with self._lock:
            entries = list(self._entries)
        wanted = category.strip() if category else None
        selected = [
            entry
            for entry in entries
            if (not wanted or entry.category == wanted)
            and (not event or entry.event == event)
            and (since is None or entry.timestamp >= since)
        ]
        if limit is not None:
            selected = selected[-max(1, int(limit)) :]
        return selected

    def counts(self, category: str) -> dict[str, int]:
        """Return lifetime event totals for *category*."""

        with self._lock:
            totals = self._totals.get(category.strip())
            return dict(totals) if totals else {}

    # ------------------------------------------------------------------
    @staticmethod
    def _prepare(path: Path) -> Path | None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            logger.warning("Event log disabled, cannot create %s: %s", path.parent, exc)
            return None
        return path

    def _write_line(self, entry: SystemLogEntry) -> None:
        assert self._path is not None
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort persistence
            logger.warning("Unable to append to event log %s: %s", self._path, exc)


__all__ = ["SystemLog", "SystemLogEntry"]
