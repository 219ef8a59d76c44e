"""Capture/batch/encode scheduling loop."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .batch import BatchAccumulator, BatchEncoder
from .capture import FrameCapturer
from .config import RecorderSettings
from .event_log import EventLog
from .media import MediaTool
from .recovery import RecoveryScanner, ScanDecision
from .state import SchedulerState

logger = logging.getLogger(__name__)

# Timer wake-ups may land a hair early; the debounce guard tolerates that much.
_DEBOUNCE_SLACK_S = 1e-3


class RecorderStartupError(RuntimeError):
    """Raised when the recorder cannot use its output directories."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptureScheduler:
    """Drive periodic captures and hand completed batches to the encoder.

    Exactly one timer task exists at a time. It is stopped before any batch is
    encoded and only restarted once the encoder has resolved, so a capture and
    an encode are never in flight together.
    """

    def __init__(
        self,
        settings: RecorderSettings,
        media_tool: MediaTool,
        *,
        event_log: EventLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._media_tool = media_tool
        self._event_log = event_log
        self._clock = clock
        self._interval = float(settings.capture_interval_s)
        self.state = SchedulerState(batch_size=settings.batch_size)
        self._frame_dir = settings.frame_path
        self._video_dir = settings.video_path
        self._capturer = FrameCapturer(
            media_tool,
            self._frame_dir,
            extension=settings.frame_extension,
            now=now,
            event_log=event_log,
        )
        self._accumulator = BatchAccumulator(self.state)
        self._encoder = BatchEncoder(
            media_tool,
            self.state,
            video_dir=self._video_dir,
            manifest_path=settings.manifest_path,
            quarantine_dir=settings.quarantine_path if settings.max_batch_attempts else None,
            max_attempts=settings.max_batch_attempts,
            event_log=event_log,
        )
        self._scanner = RecoveryScanner(
            self._frame_dir,
            self.state.batch_size,
            extension=settings.frame_extension,
        )
        self._timer: asyncio.Task[None] | None = None
        self._handoff: asyncio.Task[None] | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def settings(self) -> RecorderSettings:
        return self._settings

    @property
    def is_capturing(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def is_handing_off(self) -> bool:
        return self._handoff is not None and not self._handoff.done()

    # ------------------------------------------------------------------
    # Timer control
    # ------------------------------------------------------------------
    def start(self) -> bool:
        """Start the capture timer; returns ``False`` if it was not started."""

        if self._closed:
            return False
        if self.state.is_encoding:
            logger.debug("Not starting capture timer while a batch is encoding")
            return False
        if self.is_capturing:
            return False
        self._timer = asyncio.create_task(self._run_timer())
        return True

    def stop(self) -> None:
        """Cancel the capture timer if it is running."""

        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done():
            timer.cancel()

    def resume_capturing(self) -> None:
        logger.info("Resuming image capture...")
        self.start()

    async def _run_timer(self) -> None:
        delay = self._interval
        while True:
            await asyncio.sleep(delay)
            tick_started = self._clock()
            try:
                await self.on_tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error during capture tick")
            elapsed = self._clock() - tick_started
            delay = max(0.0, self._interval - elapsed)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------
    async def on_tick(self) -> None:
        """Capture one frame unless encoding, busy or debounced."""

        state = self.state
        if state.is_encoding or state.capture_in_flight or self.is_handing_off:
            return
        now = self._clock()
        if state.last_capture is not None and now - state.last_capture < self._interval - _DEBOUNCE_SLACK_S:
            return
        state.last_capture = now

        state.capture_in_flight = True
        try:
            captured = await self._capturer.capture()
        finally:
            state.capture_in_flight = False
        if not captured.ok:
            return

        state.last_capture_at = captured.timestamp
        complete = self._accumulator.record_capture()
        logger.info("Progress: %s images recorded for video", self._accumulator.progress())
        if complete:
            self.stop()
            self._begin_handoff()

    def _begin_handoff(self) -> None:
        if self._closed or self.is_handing_off:
            return
        self._handoff = asyncio.create_task(self.process_remaining())

    # ------------------------------------------------------------------
    # Recovery and encoding
    # ------------------------------------------------------------------
    async def process_remaining(self) -> None:
        """Encode every full batch waiting on disk, then resume capture."""

        while not self._closed:
            try:
                scan = self._scanner.scan()
            except OSError as exc:
                logger.error("Unable to list frames in %s: %s", self._frame_dir, exc)
                self._record("recovery", "scan_failed", f"Unable to list frames: {exc}")
                self.resume_capturing()
                return
            if scan.decision is ScanDecision.RESUME:
                self.resume_capturing()
                return

            logger.info("Processing batch of %d images...", scan.count)
            self.stop()
            self.state.is_encoding = True
            try:
                result = await self._encoder.encode(scan.frames)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected error while encoding batch")
                self._record("encode", "encode_failed", f"Unexpected encoder error: {exc}")
                self.state.is_encoding = False
                self.resume_capturing()
                return
            if not result.rescan:
                self.resume_capturing()
                return

    async def startup(self) -> None:
        """Prepare directories, drain any backlog and start capturing.

        Raises :class:`RecorderStartupError` when the frame directory cannot
        be created or listed.
        """

        try:
            self._frame_dir.mkdir(parents=True, exist_ok=True)
            self._video_dir.mkdir(parents=True, exist_ok=True)
            pending = self._scanner.pending_frames()
        except OSError as exc:
            raise RecorderStartupError(f"Output directory unavailable: {exc}") from exc
        logger.info("Processing existing images on startup...")
        self._record(
            "system",
            "startup",
            "Recorder starting up.",
            pending_frames=len(pending),
            batch_size=self.state.batch_size,
            source=self._settings.redacted_stream_url(),
        )
        if len(pending) >= self.state.batch_size:
            self._record("recovery", "backlog_detected", f"Found {len(pending)} frames waiting on startup.")
        self._begin_handoff()

    async def wait_for_handoff(self) -> None:
        """Wait until the current encode/recovery pass, if any, has finished."""

        while self._handoff is not None and not self._handoff.done():
            await asyncio.shield(self._handoff)

    async def aclose(self) -> None:
        """Stop the timer and abandon any in-flight capture or encode."""

        if self._closed:
            return
        self._closed = True
        timer = self._timer
        self.stop()
        handoff = self._handoff
        self._handoff = None
        for task in (timer, handoff):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._record("system", "shutdown", "Recorder shutting down.")
        await self._media_tool.close()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def pending_frame_count(self) -> int | None:
        try:
            return len(self._scanner.pending_frames())
        except OSError:
            return None

    def status(self) -> dict[str, object]:
        payload = self.state.to_dict()
        payload["capturing"] = self.is_capturing
        payload["pending_frames"] = self.pending_frame_count()
        return payload

    def _record(self, category: str, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record(category, event, message, metadata=metadata or None)


__all__ = ["CaptureScheduler", "RecorderStartupError"]
