"""Network video source abstractions."""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Iterator
from urllib.parse import urlsplit

import av
import numpy as np

logger = logging.getLogger(__name__)

# User visible identifiers for source backends.
SOURCE_BACKENDS: dict[str, str] = {
    "auto": "Automatic (synthetic for synthetic:// addresses, otherwise PyAV)",
    "pyav": "PyAV / FFmpeg (RTSP, HTTP, files)",
    "opencv": "OpenCV VideoCapture",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_SOURCE_CHOICE = "auto"
DEFAULT_READ_TIMEOUT_S = 5.0

_BACKEND_ALIASES = {
    "av": "pyav",
    "ffmpeg": "pyav",
    "cv2": "opencv",
    "test": "synthetic",
}


class SourceError(RuntimeError):
    """Raised when a video source cannot be opened or read."""


def summarise_exception(exc: BaseException) -> str:
    """Join the messages of *exc* and its cause or context, skipping repeats."""

    messages: list[str] = []
    for item in (exc, exc.__cause__, exc.__context__):
        text = str(item).strip() if item is not None else ""
        if text and text not in messages:
            messages.append(text)
    return " | ".join(messages)


def redact_address(address: str) -> str:
    """Return *address* with any embedded credentials masked.

    The user information ends at the last ``@`` so passwords containing
    ``@`` or ``/`` are masked in full.
    """

    scheme, separator, rest = address.partition("://")
    if not separator:
        return address
    userinfo, at, host = rest.rpartition("@")
    if not at or not _is_userinfo(userinfo):
        return address
    return f"{scheme}://***:***@{host}"


def _is_userinfo(text: str) -> bool:
    head, slash, _tail = text.partition("/")
    if not slash or "@" in head:
        return True
    # ``host:port/path@...`` is a path containing "@", not a login.
    _user, colon, secret = head.partition(":")
    return bool(colon) and not secret.isdigit()


def scrub_address(text: str, address: str) -> str:
    """Replace every occurrence of *address* in *text* with its redacted form.

    FFmpeg error messages quote the URL they failed on, credentials included.
    """

    redacted = redact_address(address)
    if not address or redacted == address:
        return text
    return text.replace(address, redacted)


class VideoSource(ABC):
    """Pull based source of RGB frames.

    A failed :meth:`read` does not imply the source is permanently gone; the
    caller decides when to :meth:`close` and :meth:`open` again.
    """

    def __init__(self, address: str) -> None:
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    @property
    def display_address(self) -> str:
        return redact_address(self._address)

    @property
    def reported_fps(self) -> float | None:
        """Frame rate advertised by the source, when known."""

        return None

    def _describe(self, exc: BaseException) -> str:
        return scrub_address(summarise_exception(exc), self._address)

    @property
    @abstractmethod
    def is_open(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def open(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def read(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - optional override
        return None

    def __enter__(self) -> "VideoSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PyAVSource(VideoSource):
    """Decode frames from any address FFmpeg understands (RTSP, HTTP, files)."""

    def __init__(self, address: str, *, timeout: float = DEFAULT_READ_TIMEOUT_S, rtsp_transport: str = "tcp") -> None:
        super().__init__(address)
        self._timeout = float(timeout)
        self._rtsp_transport = rtsp_transport
        self._container: av.container.InputContainer | None = None
        self._frames: Iterator[av.VideoFrame] | None = None
        self._fps: float | None = None

    @property
    def is_open(self) -> bool:
        return self._container is not None

    @property
    def reported_fps(self) -> float | None:
        return self._fps

    def open(self) -> None:
        if self._container is not None:
            return
        options: dict[str, str] = {}
        if self._address.lower().startswith("rtsp"):
            options["rtsp_transport"] = self._rtsp_transport
        try:
            container = av.open(self._address, mode="r", options=options, timeout=self._timeout)
        except (av.FFmpegError, OSError) as exc:
            raise SourceError(
                f"Failed to open {self.display_address}: {self._describe(exc)}"
            ) from exc
        if not container.streams.video:
            container.close()
            raise SourceError(f"No video stream found at {self.display_address}")
        stream = container.streams.video[0]
        rate = stream.average_rate or stream.guessed_rate
        self._fps = float(rate) if rate else None
        self._container = container
        self._frames = container.decode(stream)

    def read(self) -> np.ndarray:
        if self._frames is None:
            raise SourceError("Source is not open")
        try:
            frame = next(self._frames)
        except StopIteration as exc:
            raise SourceError(f"Stream ended: {self.display_address}") from exc
        except (av.FFmpegError, OSError) as exc:
            raise SourceError(f"Failed to read frame: {self._describe(exc)}") from exc
        return frame.to_ndarray(format="rgb24")

    def close(self) -> None:
        container = self._container
        self._container = None
        self._frames = None
        if container is not None:
            try:
                container.close()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.warning("Failed to close %s: %s", self.display_address, exc)


class OpenCVSource(VideoSource):
    """Source backed by OpenCV's ``VideoCapture``."""

    def __init__(self, address: str) -> None:
        super().__init__(address)
        self._cv2 = None
        self._capture = None
        self._fps: float | None = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    @property
    def reported_fps(self) -> float | None:
        return self._fps

    def open(self) -> None:
        if self._capture is not None:
            return
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise SourceError("OpenCV is not installed") from exc
        self._cv2 = cv2
        capture = cv2.VideoCapture(self._address)
        if not capture.isOpened():
            capture.release()
            raise SourceError(f"Failed to open {self.display_address}")
        fps = capture.get(cv2.CAP_PROP_FPS)
        self._fps = float(fps) if fps and fps > 0 else None
        self._capture = capture

    def read(self) -> np.ndarray:
        if self._capture is None or self._cv2 is None:
            raise SourceError("Source is not open")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise SourceError(f"Failed to read frame from {self.display_address}")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        capture = self._capture
        self._capture = None
        if capture is not None:
            capture.release()


class SyntheticSource(VideoSource):
    """Grey test scene with a bright square sliding across it.

    Addresses look like ``synthetic://640x480`` (size defaults to 640x480).
    The moving square makes the scene useful for exercising motion detection.
    """

    def __init__(
        self,
        address: str = "synthetic://",
        *,
        resolution: tuple[int, int] | None = None,
        fps: float | None = 25.0,
    ) -> None:
        super().__init__(address)
        width, height = resolution or _parse_synthetic_resolution(address)
        self._width, self._height = int(width), int(height)
        self._fps = fps
        self._index: int | None = None

    @property
    def is_open(self) -> bool:
        return self._index is not None

    @property
    def reported_fps(self) -> float | None:
        return self._fps

    def open(self) -> None:
        if self._index is None:
            self._index = 0

    def read(self) -> np.ndarray:
        if self._index is None:
            raise SourceError("Source is not open")
        frame = np.full((self._height, self._width, 3), 64, dtype=np.uint8)
        side = max(2, min(self._width, self._height) // 6)
        step = max(1, self._width // 60)
        x = (self._index * step) % max(1, self._width - side)
        y = (self._height - side) // 2
        frame[y : y + side, x : x + side] = 230
        self._index += 1
        return frame

    def close(self) -> None:
        self._index = None


def _parse_synthetic_resolution(address: str) -> tuple[int, int]:
    netloc = urlsplit(address).netloc or address.split("://", 1)[-1]
    text = netloc.strip().lower()
    if "x" in text:
        width, height = text.split("x", 1)
        try:
            return max(2, int(width)), max(2, int(height))
        except ValueError:
            logger.debug("Ignoring invalid synthetic resolution %r", netloc)
    return (640, 480)


def normalise_backend(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("IPCAM_SOURCE", DEFAULT_SOURCE_CHOICE)
    normalised = choice.strip().lower() or DEFAULT_SOURCE_CHOICE
    return _BACKEND_ALIASES.get(normalised, normalised)


def create_video_source(
    address: str,
    backend: str | None = None,
    *,
    timeout: float = DEFAULT_READ_TIMEOUT_S,
) -> VideoSource:
    """Create the source for *address* using *backend* or the environment.

    The source is returned unopened so the caller controls when the first
    connection attempt happens.
    """

    resolved = normalise_backend(backend)
    if resolved == "auto":
        resolved = "synthetic" if address.lower().startswith("synthetic:") else "pyav"
    if resolved == "synthetic":
        return SyntheticSource(address)
    if resolved == "pyav":
        return PyAVSource(address, timeout=timeout)
    if resolved == "opencv":
        return OpenCVSource(address)
    raise SourceError(f"Unknown source backend: {backend}")


__all__ = [
    "DEFAULT_SOURCE_CHOICE",
    "OpenCVSource",
    "PyAVSource",
    "SOURCE_BACKENDS",
    "SourceError",
    "SyntheticSource",
    "VideoSource",
    "create_video_source",
    "normalise_backend",
    "redact_address",
    "scrub_address",
    "summarise_exception",
]
