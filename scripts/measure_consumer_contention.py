"""Measure how busy frame consumers affect a stream worker's frame rate."""

from __future__ import annotations

import pathlib
import statistics
import sys
import threading
import time

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from ipcam_ingest.config import StreamConfig
from ipcam_ingest.source import SyntheticSource
from ipcam_ingest.worker import StreamWorker


def _run_worker(consumers: int, duration: float, fps: float) -> tuple[float, float]:
    config = StreamConfig(
        name=f"contention-{consumers}",
        address="synthetic://640x480",
        target_fps=fps,
        fps_window_s=0.5,
        motion_sensitivity="medium",
    )
    worker = StreamWorker(
        config,
        source_factory=lambda _config: SyntheticSource(_config.address, fps=fps),
    )
    stop = threading.Event()
    read_timings: list[float] = []

    def _consume() -> None:
        while not stop.is_set():
            start = time.perf_counter()
            worker.current_video_frame(motion_overlay=True)
            worker.video_frame_updated()
            read_timings.append(time.perf_counter() - start)

    threads = [threading.Thread(target=_consume, daemon=True) for _ in range(consumers)]
    worker.start()
    for thread in threads:
        thread.start()
    time.sleep(duration)
    measured = worker.current_fps()
    stop.set()
    for thread in threads:
        thread.join(timeout=1.0)
    worker.close()
    read_ms = statistics.mean(read_timings) * 1_000 if read_timings else 0.0
    return measured, read_ms


def main() -> None:
    fps = 25.0
    duration = 3.0

    for consumers in (0, 1, 4):
        measured, read_ms = _run_worker(consumers, duration, fps)
        print(
            f"{consumers} consumer(s): {measured:.1f} fps (target {fps:.0f}), "
            f"average frame copy {read_ms:.2f} ms"
        )


if __name__ == "__main__":
    main()
