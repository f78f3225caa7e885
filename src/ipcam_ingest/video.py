"""Video sink: PyAV segment encoder plus JPEG snapshots."""
from __future__ import annotations

import logging
from fractions import Fraction
from pathlib import Path
from typing import Sequence

import av
import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)

# Preferred FFmpeg encoders per requested encoding, first available wins.
_CODEC_PREFERENCES: dict[str, tuple[str, ...]] = {
    "mpeg4": ("mpeg4", "libx264", "h264"),
    "divx": ("mpeg4", "libx264", "h264"),
    "xvid": ("mpeg4", "libx264", "h264"),
    "h264": ("libx264", "h264", "mpeg4"),
    "libx264": ("libx264", "h264", "mpeg4"),
    "hevc": ("libx265", "hevc", "libx264", "mpeg4"),
    "h265": ("libx265", "hevc", "libx264", "mpeg4"),
}


class EncoderError(RuntimeError):
    """Raised when a video segment cannot be opened or written."""


def ensure_rgb_frame(frame: np.ndarray | Sequence, *, even: bool = True) -> np.ndarray:
    """Return *frame* as a writable, C-contiguous ``(height, width, 3)`` uint8 array.

    Grey frames are expanded to three channels and alpha is dropped. With
    ``even`` set a trailing odd row or column is cropped for yuv420p output.
    """

    pixels = np.asarray(frame)
    if pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]
    if pixels.ndim != 3 or pixels.shape[2] == 2:
        raise ValueError(f"Cannot encode a frame of shape {pixels.shape}")
    if pixels.shape[2] == 1:
        pixels = np.broadcast_to(pixels, (*pixels.shape[:2], 3))
    else:
        pixels = pixels[:, :, :3]
    if pixels.dtype != np.uint8:
        pixels = np.clip(pixels, 0, 255)
    if even:
        rows, cols = pixels.shape[:2]
        pixels = pixels[: rows - rows % 2, : cols - cols % 2]
    return np.require(pixels, dtype=np.uint8, requirements=["C", "W"])


def codec_candidates(encoding: str) -> tuple[str, ...]:
    name = encoding.strip().lower()
    return _CODEC_PREFERENCES.get(name, (name, "mpeg4", "libx264"))


class VideoEncoder:
    """One output file at a fixed resolution and frame rate.

    Width and height are rounded down to even numbers when the encoder is
    created; frames of any other size are rescaled to that geometry.
    """

    def __init__(self, path: Path | str, fps: float, encoding: str, width: int, height: int) -> None:
        if not fps or fps <= 0:
            raise ValueError("fps must be positive")
        self.path = Path(path)
        self.fps = float(fps)
        self.encoding = encoding
        self.width = max(2, int(width) & ~1)
        self.height = max(2, int(height) & ~1)
        self.frame_count = 0
        self.codec: str | None = None
        self._rate = Fraction(self.fps).limit_denominator(1001)
        self._container, self._stream = self._create()

    @property
    def closed(self) -> bool:
        return self._container is None

    def _create(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            container = av.open(str(self.path), mode="w")
        except (av.FFmpegError, OSError) as exc:
            raise EncoderError(f"Unable to create {self.path}: {exc}") from exc
        for codec in codec_candidates(self.encoding):
            try:
                stream = container.add_stream(codec, rate=self._rate)
            except (av.FFmpegError, ValueError):
                logger.debug("Encoder %s unavailable for %s", codec, self.path.name)
                continue
            stream.width = self.width
            stream.height = self.height
            stream.pix_fmt = "yuv420p"
            stream.time_base = 1 / self._rate
            self.codec = codec
            return container, stream
        container.close()
        raise EncoderError(f"No encoder available for {self.encoding!r}")

    def encode(self, frame: np.ndarray | Sequence) -> None:
        """Append one frame; its presentation time is its index in the file."""

        if self._container is None or self._stream is None:
            raise EncoderError(f"{self.path.name} is already closed")
        try:
            picture = av.VideoFrame.from_ndarray(ensure_rgb_frame(frame, even=False), format="rgb24")
            picture = picture.reformat(width=self.width, height=self.height, format="yuv420p")
            picture.pts = self.frame_count
            self._container.mux(self._stream.encode(picture))
        except (av.FFmpegError, ValueError, OSError) as exc:
            raise EncoderError(f"Failed to encode frame {self.frame_count} of {self.path.name}: {exc}") from exc
        self.frame_count += 1

    def close(self) -> None:
        """Drain the encoder, then write the trailer and release the file."""

        container, stream = self._container, self._stream
        if container is None or stream is None:
            return
        self._container = self._stream = None
        try:
            container.mux(stream.encode(None))
        finally:
            container.close()

    def __enter__(self) -> "VideoEncoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def encode_frame_to_jpeg(frame: np.ndarray | Sequence, *, quality: int = 85) -> bytes:
    """JPEG-encode an RGB frame for snapshots."""

    if not 1 <= quality <= 100:
        raise ValueError("JPEG quality must be between 1 and 100")
    return simplejpeg.encode_jpeg(ensure_rgb_frame(frame, even=False), quality=int(quality), colorspace="RGB")


__all__ = ["EncoderError", "VideoEncoder", "codec_candidates", "encode_frame_to_jpeg", "ensure_rgb_frame"]
