"""Batch accounting and video assembly."""
from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence

from .event_log import EventLog
from .frames import FrameFile, unique_video_path, video_filename
from .media import MediaResult, MediaTool, write_manifest
from .state import SchedulerState

logger = logging.getLogger(__name__)


class BatchAccumulator:
    """Count captured frames towards the next batch."""

    def __init__(self, state: SchedulerState) -> None:
        self._state = state

    def record_capture(self) -> bool:
        """Count one successful capture and report whether the batch is complete."""

        self._state.captured_count += 1
        return self._state.threshold_reached

    def reset(self) -> None:
        self._state.captured_count = 0

    def progress(self) -> str:
        return f"{self._state.captured_count}/{self._state.batch_size}"


class EncodeOutcome(str, Enum):
    """How a batch encode attempt resolved."""

    ENCODED = "encoded"
    SHORTFALL = "shortfall"
    UNPARSEABLE = "unparseable"
    FAILED = "failed"
    QUARANTINED = "quarantined"


@dataclass(slots=True)
class BatchResult:
    outcome: EncodeOutcome
    frames: list[Path] = field(default_factory=list)
    video: Path | None = None
    reason: str | None = None

    @property
    def rescan(self) -> bool:
        """Whether the frame directory changed and should be scanned again."""

        return self.outcome in {EncodeOutcome.ENCODED, EncodeOutcome.QUARANTINED}


class BatchEncoder:
    """Turn the oldest ``batch_size`` frames into one video.

    The caller raises ``state.is_encoding`` before calling :meth:`encode`; the
    encoder lowers it on every exit path.
    """

    def __init__(
        self,
        media_tool: MediaTool,
        state: SchedulerState,
        *,
        video_dir: Path,
        manifest_path: Path,
        quarantine_dir: Path | None = None,
        max_attempts: int | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self._media_tool = media_tool
        self._state = state
        self._video_dir = Path(video_dir)
        self._manifest_path = Path(manifest_path)
        self._quarantine_dir = Path(quarantine_dir) if quarantine_dir is not None else None
        self._max_attempts = max_attempts
        self._event_log = event_log

    async def encode(self, frames: Sequence[FrameFile]) -> BatchResult:
        if not self._state.is_encoding:
            raise RuntimeError("Batch encoding requires the encoding flag to be set by the caller")
        try:
            return await self._encode(list(frames))
        finally:
            self._state.is_encoding = False

    # ------------------------------------------------------------------
    async def _encode(self, frames: list[FrameFile]) -> BatchResult:
        size = self._state.batch_size
        if len(frames) < size:
            message = f"Expected {size} images, but found {len(frames)}. Aborting video creation."
            logger.error(message)
            self._record("batch_aborted", message, count=len(frames))
            return BatchResult(EncodeOutcome.SHORTFALL, reason=message)

        batch = frames[:size]
        paths = [frame.path for frame in batch]
        last = batch[-1]
        if last.timestamp is None:
            message = f"Failed to parse date from the last image ({last.name}). Skipping this batch."
            logger.error(message)
            self._record("batch_aborted", message, frame=last.name)
            return self._handle_failure(batch, EncodeOutcome.UNPARSEABLE, message)

        try:
            self._video_dir.mkdir(parents=True, exist_ok=True)
            video_path = unique_video_path(self._video_dir, video_filename(last.timestamp))
            write_manifest(self._manifest_path, paths)
        except OSError as exc:
            message = f"Unable to prepare video output: {exc}"
            logger.error(message)
            self._record("encode_failed", message)
            return self._handle_failure(batch, EncodeOutcome.FAILED, message)

        logger.info("Creating video from %d screenshots...", size)
        logger.info("Running ffmpeg with output file: %s", video_path.resolve())
        try:
            result = await self._media_tool.encode_video(self._manifest_path, video_path)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Media tool raised during video encoding")
            result = MediaResult.failure(str(exc) or type(exc).__name__)
        finally:
            self._remove_manifest()

        if not result.ok:
            message = f"Error creating video: {result.reason}"
            logger.error(message)
            self._record("encode_failed", message, video=video_path.name)
            return self._handle_failure(batch, EncodeOutcome.FAILED, message)

        logger.info("Video created: %s", video_path.resolve())
        self._delete_frames(paths)
        self._state.failed_attempts.pop(batch[0].name, None)
        self._state.captured_count = 0
        self._state.last_video = video_path.name
        self._record("video_created", f"Video created: {video_path.name}", video=video_path.name, frames=size)
        return BatchResult(EncodeOutcome.ENCODED, frames=paths, video=video_path)

    def _handle_failure(self, batch: list[FrameFile], outcome: EncodeOutcome, reason: str) -> BatchResult:
        if self._max_attempts is None or self._quarantine_dir is None:
            return BatchResult(outcome, reason=reason)
        key = batch[0].name
        attempts = self._state.failed_attempts.get(key, 0) + 1
        self._state.failed_attempts[key] = attempts
        if attempts < self._max_attempts:
            return BatchResult(outcome, reason=reason)
        try:
            self._quarantine_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Unable to create quarantine directory %s: %s", self._quarantine_dir, exc)
            return BatchResult(outcome, reason=reason)
        moved = self._quarantine([frame.path for frame in batch], self._quarantine_dir)
        self._state.failed_attempts.pop(key, None)
        self._state.captured_count = 0
        message = f"Moved {len(moved)} frames to {self._quarantine_dir} after {attempts} failed attempts"
        logger.warning(message)
        self._record("batch_quarantined", message, frames=len(moved))
        return BatchResult(EncodeOutcome.QUARANTINED, frames=moved, reason=reason)

    def _quarantine(self, paths: list[Path], directory: Path) -> list[Path]:
        moved: list[Path] = []
        for path in paths:
            target = directory / path.name
            try:
                shutil.move(str(path), str(target))
            except OSError as exc:
                logger.error("Unable to quarantine %s: %s", path.name, exc)
                continue
            moved.append(target)
        return moved

    def _delete_frames(self, paths: list[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Unable to delete processed image %s: %s", path.name, exc)

    def _remove_manifest(self) -> None:
        try:
            self._manifest_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to delete list file %s: %s", self._manifest_path, exc)

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record("encode", event, message, metadata=metadata or None)


__all__ = ["BatchAccumulator", "BatchEncoder", "BatchResult", "EncodeOutcome"]
