"""Single still-frame capture from the live source."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .event_log import EventLog
from .frames import frame_filename
from .media import MediaResult, MediaTool

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CapturedFrame:
    """Result of one capture attempt."""

    path: Path
    timestamp: datetime
    result: MediaResult

    @property
    def ok(self) -> bool:
        return self.result.ok


class FrameCapturer:
    """Ask the media tool for exactly one frame and name it after the capture time."""

    def __init__(
        self,
        media_tool: MediaTool,
        frame_dir: Path,
        *,
        extension: str = ".jpg",
        now: Callable[[], datetime] = _utcnow,
        event_log: EventLog | None = None,
    ) -> None:
        self._media_tool = media_tool
        self._frame_dir = Path(frame_dir)
        self._extension = extension
        self._now = now
        self._event_log = event_log

    @property
    def frame_dir(self) -> Path:
        return self._frame_dir

    def next_frame_path(self, moment: datetime) -> Path:
        return self._frame_dir / frame_filename(moment, self._extension)

    async def capture(self) -> CapturedFrame:
        """Grab one frame. Failures are reported in the result, never raised."""

        moment = self._now()
        destination = self.next_frame_path(moment)
        try:
            result = await self._media_tool.capture_frame(destination)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Media tool raised during frame capture")
            result = MediaResult.failure(str(exc) or type(exc).__name__)
        if not result.ok:
            logger.error("Error taking screenshot: %s", result.reason)
            if self._event_log is not None:
                self._event_log.record(
                    "capture",
                    "capture_failed",
                    f"Frame capture failed: {result.reason}",
                    metadata={"frame": destination.name},
                )
        return CapturedFrame(path=destination, timestamp=moment, result=result)


__all__ = ["CapturedFrame", "FrameCapturer"]
