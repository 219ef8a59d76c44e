"""FastAPI application exposing the recorder status."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .config import RecorderSettings, load_settings
from .event_log import EVENT_CATEGORIES, EventLog
from .frames import VIDEO_EXTENSION, VIDEO_PREFIX
from .media import MediaTool, create_media_tool
from .scheduler import CaptureScheduler
from .version import APP_VERSION

logger = logging.getLogger(__name__)


class StatusPayload(BaseModel):
    version: str
    source: str
    batch_size: int
    captured_count: int
    is_encoding: bool
    capturing: bool
    pending_frames: int | None = None
    last_capture_at: datetime | None = None
    last_video: str | None = None


class EventPayload(BaseModel):
    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, Any] | None = None


class VideoPayload(BaseModel):
    name: str
    size_bytes: int
    modified_at: datetime


def _list_videos(directory: Path) -> list[VideoPayload]:
    if not directory.exists():
        return []
    videos: list[VideoPayload] = []
    for entry in sorted(directory.iterdir()):
        if not entry.is_file():
            continue
        if not entry.name.startswith(VIDEO_PREFIX) or entry.suffix != VIDEO_EXTENSION:
            continue
        stat = entry.stat()
        videos.append(
            VideoPayload(
                name=entry.name,
                size_bytes=stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
        )
    return videos


def create_app(
    settings: RecorderSettings | None = None,
    *,
    media_tool: MediaTool | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    """Build the application; the recorder runs for the lifetime of the app."""

    settings = settings if settings is not None else load_settings()
    if event_log is None:
        event_log = EventLog(settings.event_log_path)
    tool = media_tool if media_tool is not None else create_media_tool(settings)
    scheduler = CaptureScheduler(settings, tool, event_log=event_log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await scheduler.startup()
        try:
            yield
        finally:
            await scheduler.aclose()

    app = FastAPI(title="TimelapseCam", version=APP_VERSION, lifespan=lifespan)
    app.state.scheduler = scheduler
    app.state.event_log = event_log

    @app.get("/api/status", response_model=StatusPayload)
    async def get_status() -> StatusPayload:
        status = await run_in_threadpool(scheduler.status)
        return StatusPayload(
            version=APP_VERSION,
            source=settings.redacted_stream_url(),
            batch_size=scheduler.state.batch_size,
            captured_count=scheduler.state.captured_count,
            is_encoding=scheduler.state.is_encoding,
            capturing=bool(status["capturing"]),
            pending_frames=status["pending_frames"],
            last_capture_at=scheduler.state.last_capture_at,
            last_video=scheduler.state.last_video,
        )

    @app.get("/api/events", response_model=list[EventPayload])
    async def get_events(
        limit: int = Query(100, ge=1, le=500),
        category: str | None = None,
    ) -> list[EventPayload]:
        if category is not None and category not in EVENT_CATEGORIES:
            raise HTTPException(status_code=400, detail=f"Unknown event category {category!r}")
        entries = event_log.tail(limit, category=category)
        return [EventPayload(**entry.to_dict()) for entry in entries]

    @app.get("/api/videos", response_model=list[VideoPayload])
    async def get_videos() -> list[VideoPayload]:
        try:
            return await run_in_threadpool(_list_videos, settings.video_path)
        except OSError as exc:
            logger.warning("Unable to list videos: %s", exc)
            raise HTTPException(status_code=503, detail="Video directory unavailable") from exc

    return app


__all__ = ["EventPayload", "StatusPayload", "VideoPayload", "create_app"]
