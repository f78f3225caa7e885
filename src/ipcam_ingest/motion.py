"""Triple-frame differencing motion detector."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Mapping

import numpy as np

logger = logging.getLogger(__name__)

SHRINK_FACTOR = 0.5
OVERLAY_COLOUR: tuple[int, int, int] = (0, 255, 0)


class MotionSensitivity(IntEnum):
    """Ordered motion detector sensitivity levels."""

    OFF = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: Any) -> "MotionSensitivity":
        if isinstance(value, MotionSensitivity):
            return value
        if isinstance(value, bool):
            raise ValueError("Motion sensitivity must be a level name or number")
        if isinstance(value, (int, float)):
            try:
                return cls(int(value))
            except ValueError as exc:
                raise ValueError(f"Unknown motion sensitivity level: {value!r}") from exc
        if isinstance(value, str):
            text = value.strip().upper()
            if not text:
                return cls.OFF
            if text.isdigit():
                return cls.parse(int(text))
            try:
                return cls[text]
            except KeyError as exc:
                raise ValueError(f"Unknown motion sensitivity level: {value!r}") from exc
        if value is None:
            return cls.OFF
        raise ValueError(f"Unknown motion sensitivity level: {value!r}")


@dataclass(frozen=True, slots=True)
class MotionCalibration:
    """Thresholds applied for one sensitivity level.

    ``pixel_threshold`` is the grey level change a pixel must exceed to count
    as changed. ``min_changed_pixels`` and ``min_area`` are expressed at full
    frame resolution and are scaled down when frames are shrunk before
    analysis. Frames where more than ``max_changed_fraction`` of pixels change
    at once are treated as global lighting changes rather than motion.
    """

    pixel_threshold: int
    min_changed_pixels: int
    min_area: int
    max_changed_fraction: float = 0.5

    def __post_init__(self) -> None:
        if not (0 < int(self.pixel_threshold) < 255):
            raise ValueError("pixel_threshold must be between 1 and 254")
        if int(self.min_changed_pixels) < 0:
            raise ValueError("min_changed_pixels must not be negative")
        if int(self.min_area) < 0:
            raise ValueError("min_area must not be negative")
        if not (0.0 < float(self.max_changed_fraction) <= 1.0):
            raise ValueError("max_changed_fraction must be within (0, 1]")
        object.__setattr__(self, "pixel_threshold", int(self.pixel_threshold))
        object.__setattr__(self, "min_changed_pixels", int(self.min_changed_pixels))
        object.__setattr__(self, "min_area", int(self.min_area))
        object.__setattr__(self, "max_changed_fraction", float(self.max_changed_fraction))

    def scaled(self, factor: float) -> "MotionCalibration":
        """Return thresholds expressed for frames resized by *factor*."""

        if factor == 1.0:
            return self
        area_scale = factor * factor
        return MotionCalibration(
            pixel_threshold=self.pixel_threshold,
            min_changed_pixels=max(1, int(round(self.min_changed_pixels * area_scale))),
            min_area=max(1, int(round(self.min_area * area_scale))),
            max_changed_fraction=self.max_changed_fraction,
        )

    def to_dict(self) -> dict[str, float | int]:
        return {
            "pixel_threshold": self.pixel_threshold,
            "min_changed_pixels": self.min_changed_pixels,
            "min_area": self.min_area,
            "max_changed_fraction": self.max_changed_fraction,
        }


DEFAULT_MOTION_CALIBRATION: Mapping[MotionSensitivity, MotionCalibration] = {
    MotionSensitivity.LOW: MotionCalibration(pixel_threshold=45, min_changed_pixels=400, min_area=4000),
    MotionSensitivity.MEDIUM: MotionCalibration(pixel_threshold=35, min_changed_pixels=150, min_area=1600),
    MotionSensitivity.HIGH: MotionCalibration(pixel_threshold=25, min_changed_pixels=40, min_area=400),
}


@dataclass(frozen=True, slots=True)
class MotionRect:
    """Axis aligned rectangle in frame pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def scaled(self, factor: int) -> "MotionRect":
        return MotionRect(self.x * factor, self.y * factor, self.width * factor, self.height * factor)

    def clipped(self, width: int, height: int) -> "MotionRect":
        x = min(max(0, self.x), width)
        y = min(max(0, self.y), height)
        return MotionRect(x, y, max(0, min(self.width, width - x)), max(0, min(self.height, height - y)))

    def overlaps(self, other: "MotionRect") -> bool:
        return (
            self.x < other.x + other.width
            and other.x < self.x + self.width
            and self.y < other.y + other.height
            and other.y < self.y + self.height
        )

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@dataclass(frozen=True, slots=True)
class MotionResult:
    """Outcome of analysing one frame."""

    detected: bool
    rect: MotionRect | None = None
    changed_pixels: int = 0


NO_MOTION = MotionResult(detected=False)


def to_greyscale(frame: np.ndarray) -> np.ndarray:
    """Return a 2D ``int16`` grey image for *frame*."""

    array = np.asarray(frame)
    if array.ndim == 3:
        grey = np.mean(array[..., :3], axis=2)
    elif array.ndim == 2:
        grey = array
    else:
        raise ValueError(f"Unsupported frame shape for motion detection: {array.shape}")
    return np.asarray(grey, dtype=np.int16)


def _erode(mask: np.ndarray) -> np.ndarray:
    # 2x2 erosion anchored at the top-left pixel.
    eroded = np.zeros_like(mask)
    if mask.shape[0] < 2 or mask.shape[1] < 2:
        return eroded
    eroded[:-1, :-1] = mask[:-1, :-1] & mask[1:, :-1] & mask[:-1, 1:] & mask[1:, 1:]
    return eroded


class MotionDetector:
    """Detect motion across three consecutive grey frames.

    Frames rotate through a fixed three slot buffer (previous, current, next).
    A pixel is considered changed when it differs from the newest frame in
    both of the older frames, which suppresses ghosts left behind by objects
    that have already moved on.
    """

    def __init__(
        self,
        sensitivity: MotionSensitivity | str | int = MotionSensitivity.MEDIUM,
        *,
        shrink: bool = False,
        calibration: Mapping[MotionSensitivity, MotionCalibration] | None = None,
    ) -> None:
        self._sensitivity = MotionSensitivity.parse(sensitivity)
        self._shrink = bool(shrink)
        self._step = int(round(1.0 / SHRINK_FACTOR)) if self._shrink else 1
        table = dict(DEFAULT_MOTION_CALIBRATION)
        if calibration:
            table.update({MotionSensitivity.parse(key): value for key, value in calibration.items()})
        self._calibration: MotionCalibration | None = None
        if self._sensitivity is not MotionSensitivity.OFF:
            base = table.get(self._sensitivity)
            if base is None:
                raise ValueError(f"No calibration configured for {self._sensitivity.name}")
            self._calibration = base.scaled(1.0 / self._step)
        self._slots: list[np.ndarray | None] = [None, None, None]
        self._head = 0
        self._last_rect: MotionRect | None = None

    @property
    def sensitivity(self) -> MotionSensitivity:
        return self._sensitivity

    @property
    def calibration(self) -> MotionCalibration | None:
        """Thresholds in analysed (possibly shrunk) pixel units."""

        return self._calibration

    @property
    def last_rect(self) -> MotionRect | None:
        return self._last_rect

    def reset(self) -> None:
        self._slots = [None, None, None]
        self._head = 0
        self._last_rect = None

    def detect(self, frame: np.ndarray) -> MotionResult:
        """Push *frame* into the buffer and report motion against the two before it."""

        if self._calibration is None:
            return NO_MOTION
        pixels = np.asarray(frame)
        if pixels.ndim < 2:
            raise ValueError(f"Unsupported frame shape for motion detection: {pixels.shape}")
        height, width = pixels.shape[:2]
        if self._step > 1:
            pixels = pixels[:: self._step, :: self._step]
        grey = to_greyscale(pixels)
        if grey.size == 0:
            return NO_MOTION
        self._push(grey)
        previous, current, latest = self._window()
        return self._compare(previous, current, latest, width, height)

    # ------------------------------------------------------------------
    def _push(self, grey: np.ndarray) -> None:
        newest = self._slots[self._head]
        if newest is None or newest.shape != grey.shape:
            self._slots = [grey, grey, grey]
            self._head = 0
            return
        self._head = (self._head + 1) % 3
        self._slots[self._head] = grey

    def _window(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        latest = self._slots[self._head]
        current = self._slots[(self._head - 1) % 3]
        previous = self._slots[(self._head - 2) % 3]
        return previous, current, latest  # type: ignore[return-value]

    def _compare(
        self,
        previous: np.ndarray,
        current: np.ndarray,
        latest: np.ndarray,
        width: int,
        height: int,
    ) -> MotionResult:
        calibration = self._calibration
        assert calibration is not None
        changed = (np.abs(previous - latest) > calibration.pixel_threshold) & (
            np.abs(current - latest) > calibration.pixel_threshold
        )
        mask = _erode(changed)
        count = int(np.count_nonzero(mask))
        if count == 0:
            return NO_MOTION
        if count / float(mask.size) > calibration.max_changed_fraction:
            logger.debug("Ignoring frame with %d changed pixels as a lighting change", count)
            return MotionResult(detected=False, changed_pixels=count)
        if count <= calibration.min_changed_pixels:
            return MotionResult(detected=False, changed_pixels=count)
        rows = np.flatnonzero(mask.any(axis=1))
        cols = np.flatnonzero(mask.any(axis=0))
        # Eroded masks lose the trailing row and column of each region.
        rect = MotionRect(
            x=int(cols[0]),
            y=int(rows[0]),
            width=int(cols[-1] - cols[0]) + 2,
            height=int(rows[-1] - rows[0]) + 2,
        )
        if rect.area <= calibration.min_area:
            return MotionResult(detected=False, changed_pixels=count)
        rect = rect.scaled(self._step).clipped(width, height)
        self._last_rect = rect
        return MotionResult(detected=True, rect=rect, changed_pixels=count)


def draw_motion_overlay(
    frame: np.ndarray,
    rect: MotionRect,
    *,
    colour: tuple[int, int, int] = OVERLAY_COLOUR,
    thickness: int = 2,
) -> np.ndarray:
    """Return a copy of *frame* with *rect* outlined."""

    annotated = np.array(frame, dtype=np.uint8, copy=True)
    if annotated.ndim == 2:
        annotated = np.repeat(annotated[:, :, np.newaxis], 3, axis=2)
    height, width = annotated.shape[:2]
    rect = rect.clipped(width, height)
    if rect.width == 0 or rect.height == 0:
        return annotated
    x0, y0 = rect.x, rect.y
    x1, y1 = rect.x + rect.width, rect.y + rect.height
    t = max(1, int(thickness))
    colour_array = np.asarray(colour, dtype=np.uint8)
    annotated[y0 : min(y0 + t, y1), x0:x1, :3] = colour_array
    annotated[max(y1 - t, y0) : y1, x0:x1, :3] = colour_array
    annotated[y0:y1, x0 : min(x0 + t, x1), :3] = colour_array
    annotated[y0:y1, max(x1 - t, x0) : x1, :3] = colour_array
    return annotated


__all__ = [
    "DEFAULT_MOTION_CALIBRATION",
    "MotionCalibration",
    "MotionDetector",
    "MotionRect",
    "MotionResult",
    "MotionSensitivity",
    "draw_motion_overlay",
    "to_greyscale",
]
