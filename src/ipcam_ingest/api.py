"""HTTP control surface for a set of stream workers."""
from __future__ import annotations

import logging
from typing import Iterable

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .system_log import SystemLog
from .version import APP_VERSION
from .video import encode_frame_to_jpeg
from .worker import StreamWorker


class RecordingPayload(BaseModel):
    enabled: bool


class SnapshotOptions(BaseModel):
    motion: bool = False
    quality: int = Field(default=85, ge=1, le=100)


def create_app(
    workers: Iterable[StreamWorker],
    *,
    system_log: SystemLog | None = None,
    manage_workers: bool = True,
) -> FastAPI:
    """Build the FastAPI application controlling *workers*.

    When ``manage_workers`` is true the workers are started with the
    application and closed, flushing any open segment, when it shuts down.
    """

    app = FastAPI(title="IP Camera Ingest", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    registry: dict[str, StreamWorker] = {}
    for worker in workers:
        if worker.name in registry:
            raise ValueError(f"Duplicate stream name: {worker.name}")
        registry[worker.name] = worker

    def _get_worker(name: str) -> StreamWorker:
        worker = registry.get(name)
        if worker is None:
            raise HTTPException(status_code=404, detail=f"Unknown stream: {name}")
        return worker

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        if system_log is not None:
            system_log.record("system", "startup", "Stream ingest starting up.")
        if not manage_workers:
            return
        for worker in registry.values():
            try:
                worker.start()
            except Exception:
                logger.exception("Failed to start stream worker %s", worker.name)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        if manage_workers:
            for worker in registry.values():
                await run_in_threadpool(worker.close)
        if system_log is not None:
            system_log.record(
                "system",
                "shutdown",
                "Stream ingest shut down.",
                metadata={"streams": len(registry)},
            )

    @app.get("/api/streams")
    async def list_streams() -> dict[str, object]:
        return {"streams": [worker.status() for worker in registry.values()]}

    @app.get("/api/streams/{name}")
    async def get_stream(name: str) -> dict[str, object]:
        worker = _get_worker(name)
        status = worker.status()
        status["config"] = worker.config.to_dict()
        return status

    @app.post("/api/streams/{name}/recording")
    async def set_recording(name: str, payload: RecordingPayload) -> dict[str, object]:
        worker = _get_worker(name)
        if payload.enabled:
            worker.start_video_writing()
        else:
            worker.stop_video_writing()
        return {"name": worker.name, "writing_requested": worker.get_enable_video_writing()}

    @app.get("/api/streams/{name}/frame.jpg")
    async def get_frame(name: str, motion: bool = False, quality: int = 85) -> Response:
        worker = _get_worker(name)
        try:
            options = SnapshotOptions(motion=motion, quality=quality)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        frame = worker.current_video_frame(motion_overlay=options.motion)
        if frame is None:
            raise HTTPException(status_code=503, detail="No frame available yet")
        try:
            payload = await run_in_threadpool(encode_frame_to_jpeg, frame, quality=options.quality)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Snapshot encoding failed for %s", name)
            raise HTTPException(status_code=500, detail="Failed to encode snapshot") from exc
        response = Response(content=payload, media_type="image/jpeg")
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        return response

    @app.get("/api/logs")
    async def get_system_log_entries(
        limit: int = 100, category: str | None = None
    ) -> dict[str, object]:
        if system_log is None:
            return {"entries": []}
        entries = system_log.tail(limit, category=category)
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    return app


__all__ = ["RecordingPayload", "create_app"]
