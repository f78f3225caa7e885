"""Per-camera video ingestion: frame capture, segmented recording and motion detection."""

from typing import Any

from .config import StreamConfig, load_stream_configs
from .motion import MotionSensitivity
from .schedule import ScheduleGrid
from .version import APP_VERSION
from .worker import StreamWorker


def create_app(*args: Any, **kwargs: Any):
    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "MotionSensitivity",
    "ScheduleGrid",
    "StreamConfig",
    "StreamWorker",
    "create_app",
    "load_stream_configs",
]
