"""Rolling frame rate estimation."""
from __future__ import annotations

import math


class FpsCounter:
    """Estimate frames per second from frame counts over elapsed time.

    Frames are counted with :meth:`tick`. Once ``window_seconds`` have elapsed
    since the start of the current window the estimate is recomputed as
    ``frames / elapsed`` and a new window begins. Until the first window
    completes :attr:`fps` reports ``initial_fps``.
    """

    def __init__(self, window_seconds: float = 2.0, *, initial_fps: float = 0.0) -> None:
        window = float(window_seconds)
        if not math.isfinite(window) or window <= 0:
            raise ValueError("window_seconds must be a positive number")
        self._window = window
        self._initial = max(0.0, float(initial_fps))
        self._fps = self._initial
        self._window_start: float | None = None
        self._frames = 0

    @property
    def fps(self) -> float:
        return self._fps

    @property
    def window_seconds(self) -> float:
        return self._window

    def reset(self, initial_fps: float | None = None) -> None:
        if initial_fps is not None:
            self._initial = max(0.0, float(initial_fps))
        self._fps = self._initial
        self._window_start = None
        self._frames = 0

    def tick(self, now: float) -> bool:
        """Count one frame at monotonic time *now*.

        Returns ``True`` when the estimate was recomputed by this call.
        """

        if self._window_start is None:
            self._window_start = now
            self._frames = 0
            return False
        self._frames += 1
        elapsed = now - self._window_start
        if elapsed < self._window:
            return False
        self._fps = self._frames / elapsed
        self._window_start = now
        self._frames = 0
        return True

    def idle(self, now: float) -> bool:
        """Note that no frame arrived at *now* so the window still elapses.

        Without this a source that stops delivering would keep its last
        estimate forever.
        """

        if self._window_start is None:
            self._window_start = now
            self._frames = 0
            return False
        elapsed = now - self._window_start
        if elapsed < self._window:
            return False
        self._fps = self._frames / elapsed
        self._window_start = now
        self._frames = 0
        return True


__all__ = ["FpsCounter"]
