"""Weekly day/time schedules gating recording and motion detection."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
MINUTES_PER_DAY = 24 * 60

_TRUE_TOKENS = {"1", "true", "yes", "on", "y", "x"}
_FALSE_TOKENS = {"0", "false", "no", "off", "n", "", "-", "."}


@dataclass(frozen=True, slots=True)
class ScheduleGrid:
    """A day-of-week by time-of-day boolean matrix.

    Row 0 is Monday. Each row splits the day into ``len(row)`` equal slots, so
    24 columns give an hourly schedule and 48 a half-hourly one. A grid is
    considered malformed when it does not have exactly seven non-empty rows of
    equal length; malformed grids never activate.
    """

    rows: tuple[tuple[bool, ...], ...]

    @classmethod
    def from_rows(cls, rows: Iterable[Iterable[Any]]) -> "ScheduleGrid":
        return cls(tuple(tuple(bool(cell) for cell in row) for row in rows))

    @property
    def slots_per_day(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    @property
    def is_valid(self) -> bool:
        if len(self.rows) != DAYS_PER_WEEK:
            return False
        width = len(self.rows[0])
        if width == 0:
            return False
        return all(len(row) == width for row in self.rows)

    def slot_for(self, moment: datetime) -> tuple[int, int] | None:
        """Return ``(day, slot)`` covering *moment* or ``None`` when malformed."""

        if not self.is_valid:
            return None
        minute_of_day = moment.hour * 60 + moment.minute
        slot = minute_of_day * self.slots_per_day // MINUTES_PER_DAY
        return moment.weekday(), min(slot, self.slots_per_day - 1)

    def is_active(self, moment: datetime) -> bool:
        position = self.slot_for(moment)
        if position is None:
            return False
        day, slot = position
        return self.rows[day][slot]

    def to_list(self) -> list[list[bool]]:
        return [list(row) for row in self.rows]


def is_schedule_active(grid: ScheduleGrid | None, moment: datetime) -> bool:
    """Return whether a feature gated by *grid* is active at *moment*.

    No grid means the schedule feature is unused and the answer is always
    ``True``. A malformed grid always answers ``False``.
    """

    if grid is None:
        return True
    try:
        return grid.is_active(moment)
    except Exception:  # pragma: no cover - malformed grids are reported inactive
        logger.debug("Schedule evaluation failed", exc_info=True)
        return False


def schedule_slot(grid: ScheduleGrid | None, moment: datetime) -> tuple[int, int] | None:
    """Return the ``(day, slot)`` key of *moment*, used to detect slot changes."""

    if grid is None:
        return None
    return grid.slot_for(moment)


def _parse_cell(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_TOKENS:
            return True
        if text in _FALSE_TOKENS:
            return False
    raise ValueError(f"Unsupported schedule cell value: {value!r}")


def _parse_row(value: Any) -> tuple[bool, ...]:
    if isinstance(value, str):
        # Compact "111000..." notation.
        return tuple(_parse_cell(char) for char in value.strip())
    if isinstance(value, Sequence):
        return tuple(_parse_cell(cell) for cell in value)
    raise ValueError("Schedule rows must be sequences or strings")


def parse_schedule(value: Any) -> ScheduleGrid | None:
    """Build a :class:`ScheduleGrid` from a JSON-friendly payload.

    ``None`` and empty payloads mean "no schedule". Rows that cannot be parsed
    yield an empty grid, which is malformed and therefore always inactive.
    """

    if value is None:
        return None
    if isinstance(value, ScheduleGrid):
        return value
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        logger.warning("Ignoring schedule payload of type %s; treating as inactive", type(value).__name__)
        return ScheduleGrid(())
    rows = list(value)
    if not rows:
        return None
    try:
        return ScheduleGrid(tuple(_parse_row(row) for row in rows))
    except ValueError as exc:
        logger.warning("Malformed schedule treated as inactive: %s", exc)
        return ScheduleGrid(())


__all__ = [
    "DAYS_PER_WEEK",
    "ScheduleGrid",
    "is_schedule_active",
    "parse_schedule",
    "schedule_slot",
]
