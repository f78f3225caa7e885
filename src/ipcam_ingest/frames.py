"""State shared between a stream worker and its consumers."""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

import numpy as np

from .motion import MotionRect


@dataclass(frozen=True, slots=True)
class FrameSnapshot:
    """An immutable captured frame.

    ``pixels`` is a read-only array owned by the snapshot; width and height are
    taken from it at construction so they can never disagree.
    """

    pixels: np.ndarray
    width: int
    height: int
    timestamp: float

    @classmethod
    def capture(cls, frame: np.ndarray, timestamp: float, *, copy: bool = True) -> "FrameSnapshot":
        pixels = np.array(frame, copy=True) if copy else np.asarray(frame)
        if pixels.ndim < 2:
            raise ValueError("Frames must have at least two dimensions")
        pixels.setflags(write=False)
        height, width = pixels.shape[:2]
        return cls(pixels=pixels, width=int(width), height=int(height), timestamp=float(timestamp))

    @property
    def aspect_ratio(self) -> float:
        if self.height == 0:
            return 0.0
        return self.width / self.height

    def copy_pixels(self) -> np.ndarray:
        return np.array(self.pixels, copy=True)


class SharedFrameStore:
    """Latest frame, annotated frame and control flags behind independent locks.

    The frame lock covers the raw snapshot, the "updated" flag and the frame
    rate. The motion lock covers the annotated snapshot and the writing lock
    covers the requested writing state. No method holds more than one lock.
    """

    def __init__(self, *, initial_fps: float = 0.0) -> None:
        self._frame_lock = Lock()
        self._motion_lock = Lock()
        self._writing_lock = Lock()
        self._frame: FrameSnapshot | None = None
        self._updated = False
        self._fps = float(initial_fps)
        self._annotated: FrameSnapshot | None = None
        self._motion_rect: MotionRect | None = None
        self._writing_enabled = False

    # ------------------------------------------------------------ producer
    def publish_frame(self, frame: np.ndarray, timestamp: float) -> FrameSnapshot:
        snapshot = FrameSnapshot.capture(frame, timestamp)
        with self._frame_lock:
            self._frame = snapshot
            self._updated = True
        return snapshot

    def publish_annotated(
        self,
        frame: np.ndarray | None,
        timestamp: float = 0.0,
        *,
        rect: MotionRect | None = None,
    ) -> None:
        """Publish the motion view of the latest frame.

        The worker hands over a freshly drawn copy, so no further copy is made.
        """

        snapshot = FrameSnapshot.capture(frame, timestamp, copy=False) if frame is not None else None
        with self._motion_lock:
            self._annotated = snapshot
            self._motion_rect = rect

    def mark_not_updated(self) -> None:
        with self._frame_lock:
            self._updated = False

    def set_fps(self, fps: float) -> None:
        with self._frame_lock:
            self._fps = float(fps)

    def set_writing_enabled(self, enabled: bool) -> bool:
        """Set the requested writing state and return the previous value."""

        with self._writing_lock:
            previous = self._writing_enabled
            self._writing_enabled = bool(enabled)
        return previous

    # ------------------------------------------------------------ consumers
    def writing_enabled(self) -> bool:
        with self._writing_lock:
            return self._writing_enabled

    def consume_updated(self) -> bool:
        """Return whether a frame arrived since the last call and clear the flag."""

        with self._frame_lock:
            updated = self._updated
            self._updated = False
        return updated

    def latest(self) -> FrameSnapshot | None:
        with self._frame_lock:
            return self._frame

    def latest_annotated(self) -> FrameSnapshot | None:
        with self._motion_lock:
            return self._annotated

    def motion_rect(self) -> MotionRect | None:
        with self._motion_lock:
            return self._motion_rect

    def fps(self) -> float:
        with self._frame_lock:
            return self._fps


__all__ = ["FrameSnapshot", "SharedFrameStore"]
