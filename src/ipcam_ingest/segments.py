"""Duration bounded recording segments."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import numpy as np

from .clock import Clock, SystemClock
from .system_log import SystemLog
from .video import EncoderError, VideoEncoder

logger = logging.getLogger(__name__)

EncoderFactory = Callable[..., VideoEncoder]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_stream_name(name: str) -> str:
    """Return *name* reduced to characters that are safe in file names."""

    cleaned = _UNSAFE_CHARS.sub("_", Path(str(name)).name).strip("._")
    return cleaned or "cam"


def segment_filename(name: str, moment: datetime, extension: str = "mp4") -> str:
    """Return the file name for a segment of stream *name* opened at *moment*."""

    if not extension.startswith("."):
        extension = f".{extension}"
    return f"{safe_stream_name(name)}_{moment:%Y%m%d_%H%M%S}{extension}"


@dataclass(slots=True)
class RecordingSession:
    """The currently open output segment."""

    path: Path
    encoder: VideoEncoder
    started_at: datetime
    opened_monotonic: float
    target_duration_s: float
    width: int
    height: int
    fps: float

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.opened_monotonic)

    @property
    def frame_count(self) -> int:
        return self.encoder.frame_count


class SegmentWriter:
    """Own one output encoder at a time and rotate it as segments fill up.

    ``write`` opens a segment on demand, closes and reopens it once
    ``segment_duration_s`` has elapsed, then appends the frame. The resolution
    and frame rate of a segment are fixed by the first frame written to it.
    """

    def __init__(
        self,
        name: str,
        save_dir: Path | str,
        segment_duration_s: float,
        *,
        encoding: str = "mpeg4",
        extension: str = "mp4",
        clock: Clock | None = None,
        encoder_factory: EncoderFactory | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        if segment_duration_s <= 0:
            raise ValueError("segment_duration_s must be positive")
        self._name = name
        self._save_dir = Path(save_dir)
        self._duration = float(segment_duration_s)
        self._encoding = encoding
        self._extension = extension
        self._clock = clock or SystemClock()
        self._encoder_factory = encoder_factory or VideoEncoder
        self._system_log = system_log
        self._session: RecordingSession | None = None
        self._completed: list[Path] = []
        self._issued: set[Path] = set()

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    @property
    def is_open(self) -> bool:
        return self._session is not None

    @property
    def completed_segments(self) -> list[Path]:
        return list(self._completed)

    @property
    def segment_duration_s(self) -> float:
        return self._duration

    # ------------------------------------------------------------------
    def write(self, frame: np.ndarray, fps: float) -> None:
        """Append *frame*, opening or rotating the segment first when required.

        Raises :class:`EncoderError` when the segment cannot be opened or the
        frame cannot be written. The caller is expected to :meth:`close` the
        writer in that case.
        """

        now = self._clock.monotonic()
        session = self._session
        if session is not None and session.elapsed(now) >= self._duration:
            logger.debug("Segment %s reached %.1fs; rotating", session.path.name, session.elapsed(now))
            self.close()
            session = None
        if session is None:
            session = self._open(frame, fps, now)
        session.encoder.encode(frame)

    def close(self) -> Path | None:
        """Finish the current segment, flushing the encoder before release."""

        session = self._session
        if session is None:
            return None
        self._session = None
        try:
            session.encoder.close()
        except Exception:
            logger.exception("Failed to finalise segment %s", session.path)
            self._record("writer_failed", f"Failed to finalise {session.path.name}", session.path)
        if session.frame_count == 0:
            self._discard(session.path)
            return None
        self._completed.append(session.path)
        logger.info("Closed segment %s (%d frames)", session.path, session.frame_count)
        self._record("segment_closed", f"Closed segment {session.path.name}", session.path, session.frame_count)
        return session.path

    # ------------------------------------------------------------------
    def _open(self, frame: np.ndarray, fps: float, now: float) -> RecordingSession:
        array = np.asarray(frame)
        if array.ndim < 2 or array.shape[0] == 0 or array.shape[1] == 0:
            raise EncoderError("Cannot open a segment for an empty frame")
        height, width = array.shape[:2]
        started_at = self._clock.now()
        path = self._unique_path(segment_filename(self._name, started_at, self._extension))
        encoder = self._encoder_factory(
            path=path,
            fps=float(fps),
            encoding=self._encoding,
            width=int(width),
            height=int(height),
        )
        session = RecordingSession(
            path=path,
            encoder=encoder,
            started_at=started_at,
            opened_monotonic=now,
            target_duration_s=self._duration,
            width=int(width),
            height=int(height),
            fps=float(fps),
        )
        self._session = session
        logger.info("Opened segment %s (%dx%d @ %.2f fps)", path, width, height, fps)
        self._record("segment_opened", f"Opened segment {path.name}", path)
        return session

    def _unique_path(self, filename: str) -> Path:
        candidate = self._save_dir / filename
        if not self._taken(candidate):
            self._issued.add(candidate)
            return candidate
        stem, suffix = candidate.stem, candidate.suffix
        index = 1
        while True:
            candidate = self._save_dir / f"{stem}_{index}{suffix}"
            if not self._taken(candidate):
                self._issued.add(candidate)
                return candidate
            index += 1

    def _taken(self, path: Path) -> bool:
        return path in self._issued or path.exists()

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:  # pragma: no cover - best-effort cleanup
            logger.debug("Unable to remove empty segment %s", path, exc_info=True)

    def _record(self, event: str, message: str, path: Path, frames: int | None = None) -> None:
        if self._system_log is None:
            return
        self._system_log.record(
            f"stream:{self._name}",
            event,
            message,
            metadata={"path": str(path), "frames": frames},
        )


__all__ = ["RecordingSession", "SegmentWriter", "safe_stream_name", "segment_filename"]
