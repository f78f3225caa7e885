"""Per-camera ingestion worker."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from threading import Event, Lock, Thread, current_thread
from typing import Any, Callable

import numpy as np

from .clock import Clock, SystemClock
from .config import DEFAULT_TARGET_FPS, StreamConfig
from .fps import FpsCounter
from .frames import FrameSnapshot, SharedFrameStore
from .motion import MotionDetector, MotionRect, draw_motion_overlay
from .schedule import is_schedule_active, schedule_slot
from .segments import EncoderFactory, SegmentWriter
from .source import SourceError, VideoSource, create_video_source, scrub_address, summarise_exception
from .system_log import SystemLog

SourceFactory = Callable[[StreamConfig], VideoSource]

MAX_TARGET_FPS = 120.0
MOTION_EVENT_INTERVAL_S = 10.0
_MALFORMED_SLOT = ("malformed",)


def _default_source_factory(config: StreamConfig) -> VideoSource:
    return create_video_source(config.address, config.source_backend, timeout=config.read_timeout_s)


class StreamWorker:
    """Pull frames from one camera, record segments and look for motion.

    The worker runs :meth:`run_iteration` on a background thread at the
    stream's frame rate until :meth:`stop` is called. Consumers on other
    threads use the public query methods, which only ever copy small fields
    out of the shared frame store. Recording and motion state belong to the
    worker thread alone.

    Nothing raised inside an iteration escapes the loop. Problems surface as
    observable state instead: :meth:`video_frame_updated` stays ``False``
    while the source is failing, and :meth:`get_enable_video_writing` can stay
    ``True`` while no segment is being written.
    """

    def __init__(
        self,
        config: StreamConfig,
        *,
        source_factory: SourceFactory | None = None,
        clock: Clock | None = None,
        encoder_factory: EncoderFactory | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._system_log = system_log
        self._source_factory = source_factory or _default_source_factory
        self._source: VideoSource | None = None
        self._store = SharedFrameStore(initial_fps=config.target_fps or DEFAULT_TARGET_FPS)
        self._writer = SegmentWriter(
            config.name,
            config.save_dir,
            config.segment_duration_s,
            encoding=config.encoding,
            extension=config.container_extension,
            clock=self._clock,
            encoder_factory=encoder_factory,
            system_log=system_log,
        )
        self._detector: MotionDetector | None = None
        if config.motion_enabled:
            self._detector = MotionDetector(
                config.motion_sensitivity,
                shrink=config.shrink_for_motion,
                calibration=config.motion_calibration,
            )
        self._target_fps = float(config.target_fps or DEFAULT_TARGET_FPS)
        self._fps_counter = FpsCounter(config.fps_window_s, initial_fps=self._target_fps)

        # Worker thread state.
        self._connected = False
        self._next_connect_at: float | None = None
        self._reconnect_pending = False
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._last_logged_error: str | None = None
        self._frame_size: tuple[int, int] = (0, 0)
        self._schedule_slot: tuple[Any, ...] | None = None
        self._last_writing_request = False
        self._writer_suppressed = False
        self._motion_running = False
        self._last_motion_event: float | None = None

        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._closed = False
        self._logger = logging.getLogger(f"{__name__}.{type(self).__name__}")

    # ------------------------------------------------------------------ task
    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def update_period(self) -> float:
        return 1.0 / self._target_fps

    @property
    def completed_segments(self) -> list[Path]:
        return self._writer.completed_segments

    def start(self) -> None:
        """Start the background loop; calling it again while running is a no-op."""

        with self._lock:
            if self._closed:
                raise RuntimeError("Stream worker has been closed")
            thread = self._thread
            if thread is not None and thread.is_alive():
                return
            self._stop_event.clear()
            thread = Thread(target=self._run, name=f"StreamWorker-{self.name}", daemon=True)
            self._thread = thread
        self._logger.info("Starting stream worker %s for %s", self.name, self._config.display_address)
        thread.start()

    def stop(self, timeout: float | None = 5.0) -> bool:
        """Request the loop to stop and wait for it; returns ``True`` once stopped.

        The request is honoured between iterations, so a frame read or write
        in progress always completes and an open segment is finalised.
        """

        self._stop_event.set()
        return self.join(timeout)

    def join(self, timeout: float | None = None) -> bool:
        thread = self._thread
        if thread is None or thread is current_thread():
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def close(self) -> None:
        """Stop the worker and release the source and any open segment."""

        stopped = self.stop()
        with self._lock:
            self._closed = True
        if stopped:
            # The loop tears down on exit; this covers a worker that never ran.
            self._shutdown()
        else:  # pragma: no cover - only when a source read hangs past the timeout
            self._logger.warning("Stream worker %s did not stop in time", self.name)

    def __enter__(self) -> "StreamWorker":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------------------------------------------------- public API
    def start_video_writing(self) -> None:
        """Request recording; applied at the next iteration boundary."""

        if not self._store.set_writing_enabled(True):
            self._logger.info("Video writing requested for %s", self.name)

    def stop_video_writing(self) -> None:
        """Request recording to end; applied at the next iteration boundary."""

        if self._store.set_writing_enabled(False):
            self._logger.info("Video writing stop requested for %s", self.name)

    def get_enable_video_writing(self) -> bool:
        return self._store.writing_enabled()

    def video_frame_updated(self) -> bool:
        """Return whether a new frame arrived since the previous call."""

        return self._store.consume_updated()

    def get_aspect_ratio_and_size(self) -> tuple[float, int, int]:
        """Return ``(width / height, width, height)`` of the latest frame."""

        snapshot = self._store.latest()
        if snapshot is None:
            return (0.0, 0, 0)
        return (snapshot.aspect_ratio, snapshot.width, snapshot.height)

    def current_video_frame(self, motion_overlay: bool = False) -> np.ndarray | None:
        """Return a copy of the latest frame, or its motion view when requested.

        Falls back to the raw frame when no motion view is available. Returns
        ``None`` before the first frame arrives.
        """

        snapshot: FrameSnapshot | None = None
        if motion_overlay:
            snapshot = self._store.latest_annotated()
        if snapshot is None:
            snapshot = self._store.latest()
        if snapshot is None:
            return None
        return snapshot.copy_pixels()

    def current_fps(self) -> float:
        return self._store.fps()

    def status(self) -> dict[str, object]:
        """Return a JSON-serialisable summary of the worker."""

        _ratio, width, height = self.get_aspect_ratio_and_size()
        session = self._writer.session
        rect = self._store.motion_rect()
        return {
            "name": self.name,
            "address": self._config.display_address,
            "running": self.is_running,
            "connected": self._connected,
            "writing_requested": self.get_enable_video_writing(),
            "writing_active": session is not None,
            "current_segment": str(session.path) if session is not None else None,
            "segments_completed": len(self._writer.completed_segments),
            "fps": round(self.current_fps(), 3),
            "width": width,
            "height": height,
            "motion_enabled": self._detector is not None,
            "motion_detected": rect is not None,
            "motion_rect": list(rect.as_tuple()) if rect is not None else None,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "events": self._system_log.counts(f"stream:{self.name}") if self._system_log is not None else {},
        }

    # ----------------------------------------------------------------- loop
    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    self.run_iteration()
                except Exception:  # pragma: no cover - every stage guards itself
                    self._logger.exception("Unexpected error in stream worker %s", self.name)
                remaining = self.update_period - (time.monotonic() - started)
                if remaining > 0 and self._stop_event.wait(remaining):
                    break
        finally:
            self._shutdown()
            with self._lock:
                if self._thread is current_thread():
                    self._thread = None

    def run_iteration(self) -> None:
        """Run one iteration: grab, schedule, record, detect, measure.

        Must only be called from one thread at a time; the background loop
        calls it for you once :meth:`start` has been used.
        """

        if not self._ensure_connected():
            self._store.mark_not_updated()
            self._measure_fps(delivered=False)
            return
        snapshot = self._grab_frame()
        moment = self._clock.now()
        self._check_recording_schedule(moment)
        if snapshot is None:
            self._measure_fps(delivered=False)
            return
        self._write_frame(snapshot)
        self._check_motion(snapshot, moment)
        self._measure_fps(delivered=True)

    def _measure_fps(self, *, delivered: bool) -> None:
        now = self._clock.monotonic()
        counter = self._fps_counter
        if counter.tick(now) if delivered else counter.idle(now):
            self._store.set_fps(counter.fps)

    # ----------------------------------------------------------- connection
    def _ensure_connected(self) -> bool:
        source = self._source
        if source is not None and source.is_open:
            return True
        now = self._clock.monotonic()
        if self._next_connect_at is not None and now < self._next_connect_at:
            return False
        if self._reconnect_pending:
            self._reconnect_pending = False
            self._logger.info("Reconnecting to %s", self.name)
            self._record("reconnecting", f"Reconnecting to {self._config.display_address}")
        try:
            if source is None:
                source = self._source_factory(self._config)
                self._source = source
            source.open()
        except Exception as exc:
            self._next_connect_at = now + self._config.reconnect_delay_s
            if isinstance(exc, SourceError):
                detail = str(exc)
            else:
                detail = f"Unable to connect to {self._config.display_address}: {exc}"
            self._note_error(detail)
            return False
        self._connected = True
        self._next_connect_at = None
        self._consecutive_failures = 0
        self._last_error = None
        self._last_logged_error = None
        self._apply_target_fps(source.reported_fps)
        self._logger.info(
            "Connected to %s (%s) at %.2f fps", self.name, self._config.display_address, self._target_fps
        )
        self._record("connected", f"Connected to {self._config.display_address}")
        return True

    def _apply_target_fps(self, reported: float | None) -> None:
        if self._config.target_fps is not None:
            return
        target = DEFAULT_TARGET_FPS
        if reported is not None and 0 < reported <= MAX_TARGET_FPS:
            target = float(reported)
        self._target_fps = target
        self._fps_counter.reset(initial_fps=target)
        self._store.set_fps(target)

    def _disconnect(self, reason: str) -> None:
        """Tear down the session, motion buffers and source before reconnecting."""

        self._close_writer()
        if self._detector is not None:
            self._detector.reset()
        self._motion_running = False
        self._store.publish_annotated(None)
        source = self._source
        if source is not None:
            try:
                source.close()
            except Exception:
                self._logger.exception("Failed to close source for %s", self.name)
        self._connected = False
        self._next_connect_at = self._clock.monotonic() + self._config.reconnect_delay_s
        self._reconnect_pending = True
        self._logger.warning("Disconnected from %s: %s", self.name, reason)
        self._record("disconnected", reason)

    def _grab_frame(self) -> FrameSnapshot | None:
        source = self._source
        assert source is not None
        try:
            frame = source.read()
            array = np.asarray(frame)
            if array.ndim < 2 or array.size == 0:
                raise ValueError(f"Source returned an empty frame of shape {array.shape}")
            snapshot = self._store.publish_frame(array, self._clock.monotonic())
        except Exception as exc:
            self._store.mark_not_updated()
            self._consecutive_failures += 1
            self._note_error(str(exc) if isinstance(exc, SourceError) else f"Failed to read frame: {exc}")
            if self._consecutive_failures >= self._config.reconnect_after_failures:
                self._disconnect(f"{self._consecutive_failures} consecutive read failures")
                self._consecutive_failures = 0
            return None
        if self._consecutive_failures:
            self._logger.info("Frames flowing again for %s", self.name)
        self._consecutive_failures = 0
        self._last_error = None
        self._last_logged_error = None
        size = (snapshot.width, snapshot.height)
        if size != self._frame_size:
            self._logger.info(
                "Frame size for %s is %dx%d (aspect %.3f)", self.name, size[0], size[1], snapshot.aspect_ratio
            )
            self._frame_size = size
        return snapshot

    # ------------------------------------------------------------ recording
    def _check_recording_schedule(self, moment: datetime) -> None:
        grid = self._config.recording_schedule
        if grid is None:
            return
        slot = schedule_slot(grid, moment)
        key = slot if slot is not None else _MALFORMED_SLOT
        if key == self._schedule_slot:
            return
        self._schedule_slot = key
        self._writer_suppressed = False
        active = is_schedule_active(grid, moment)
        if slot is None:
            self._logger.warning("Recording schedule for %s is malformed; recording disabled", self.name)
        previous = self._store.set_writing_enabled(active)
        if previous != active:
            self._logger.info("Recording schedule %s %s", "enabled" if active else "disabled", self.name)

    def _write_frame(self, snapshot: FrameSnapshot) -> None:
        enabled = self._store.writing_enabled()
        if enabled != self._last_writing_request:
            self._last_writing_request = enabled
            if enabled:
                self._writer_suppressed = False
        if not enabled:
            if self._writer.is_open:
                self._close_writer()
            return
        if self._writer_suppressed:
            return
        try:
            self._writer.write(snapshot.pixels, self._target_fps)
        except Exception as exc:
            detail = summarise_exception(exc)
            self._logger.error("Recording failed for %s: %s", self.name, detail)
            self._record("writer_failed", f"Recording failed: {detail}")
            self._last_error = detail
            self._writer_suppressed = True
            self._close_writer()

    def _close_writer(self) -> None:
        try:
            self._writer.close()
        except Exception:
            self._logger.exception("Failed to close segment for %s", self.name)

    # --------------------------------------------------------------- motion
    def _check_motion(self, snapshot: FrameSnapshot, moment: datetime) -> None:
        detector = self._detector
        if detector is None:
            return
        if not is_schedule_active(self._config.motion_schedule, moment):
            if self._motion_running:
                detector.reset()
                self._store.publish_annotated(None)
                self._motion_running = False
            return
        self._motion_running = True
        try:
            result = detector.detect(snapshot.pixels)
            if result.detected and result.rect is not None:
                annotated = draw_motion_overlay(snapshot.pixels, result.rect)
                self._store.publish_annotated(annotated, snapshot.timestamp, rect=result.rect)
                self._note_motion(result.rect)
            else:
                self._store.publish_annotated(None)
        except Exception:
            self._logger.exception("Motion detection failed for %s", self.name)

    def _note_motion(self, rect: MotionRect) -> None:
        now = self._clock.monotonic()
        last = self._last_motion_event
        if last is not None and now - last < MOTION_EVENT_INTERVAL_S:
            return
        self._last_motion_event = now
        self._logger.info("Motion detected on %s at %s", self.name, rect.as_tuple())
        self._record("motion_detected", "Motion detected", rect=list(rect.as_tuple()))

    # ------------------------------------------------------------- teardown
    def _shutdown(self) -> None:
        self._close_writer()
        if self._detector is not None:
            self._detector.reset()
        self._motion_running = False
        source = self._source
        if source is not None:
            try:
                source.close()
            except Exception:
                self._logger.exception("Failed to close source for %s", self.name)
        if self._connected:
            self._connected = False
            self._logger.info("Stream worker %s stopped", self.name)
            self._record("stopped", "Stream worker stopped")

    # -------------------------------------------------------------- helpers
    def _note_error(self, message: str) -> None:
        message = scrub_address(message, self._config.address)
        self._last_error = message
        if message != self._last_logged_error:
            self._logger.warning("%s: %s", self.name, message)
            self._last_logged_error = message

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._system_log is None:
            return
        self._system_log.record(f"stream:{self.name}", event, message, metadata=metadata or None)


__all__ = ["StreamWorker"]
