"""Reconcile scheduling state with the frames left on disk."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .frames import FrameFile, list_frames


class ScanDecision(str, Enum):
    ENCODE = "encode"
    RESUME = "resume"


@dataclass(slots=True)
class ScanResult:
    decision: ScanDecision
    frames: list[FrameFile] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.frames)


class RecoveryScanner:
    """Decide between encoding a waiting batch and resuming capture.

    The frame directory is the only record of progress, so the decision is
    always re-derived from a fresh listing.
    """

    def __init__(self, frame_dir: Path, batch_size: int, *, extension: str = ".jpg") -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._frame_dir = Path(frame_dir)
        self._batch_size = batch_size
        self._extension = extension

    def pending_frames(self) -> list[FrameFile]:
        return list_frames(self._frame_dir, self._extension)

    def scan(self) -> ScanResult:
        """List leftover frames; raises :class:`OSError` if the directory is unreadable."""

        frames = self.pending_frames()
        if len(frames) >= self._batch_size:
            return ScanResult(ScanDecision.ENCODE, frames)
        return ScanResult(ScanDecision.RESUME, frames)


__all__ = ["RecoveryScanner", "ScanDecision", "ScanResult"]
