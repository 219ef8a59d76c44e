"""Frame and video naming helpers.

Frame files carry their capture time in the name so that a directory listing
is enough to rebuild the batch order after a restart::

    frame-2024-05-01T12-30-05-123Z.jpg  ->  2024-05-01 12:30:05.123 UTC

Videos are named after the last frame of their batch with minute precision in
local time (``video-2024-05-01-13-30.mp4``).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import re

FRAME_PREFIX = "frame-"
VIDEO_PREFIX = "video-"
VIDEO_EXTENSION = ".mp4"

_FRAME_STAMP_RE = re.compile(
    r"^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    r"T(?P<hour>\d{2})-(?P<minute>\d{2})-(?P<second>\d{2})-(?P<millis>\d{3})Z$"
)


@dataclass(frozen=True, slots=True)
class FrameFile:
    """A frame discovered on disk together with its parsed capture time."""

    path: Path
    timestamp: datetime | None

    @property
    def name(self) -> str:
        return self.path.name


def format_frame_timestamp(moment: datetime) -> str:
    """Return the filename-safe ISO-8601 stamp for *moment* (UTC, millisecond precision)."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    utc = moment.astimezone(timezone.utc)
    millis = utc.microsecond // 1000
    return utc.strftime("%Y-%m-%dT%H-%M-%S-") + f"{millis:03d}Z"


def frame_filename(moment: datetime, extension: str = ".jpg") -> str:
    return f"{FRAME_PREFIX}{format_frame_timestamp(moment)}{extension}"


def parse_frame_timestamp(name: str, extension: str = ".jpg") -> datetime | None:
    """Extract the capture time from a frame filename, or ``None`` when it is malformed."""

    base = Path(name).name
    if not base.startswith(FRAME_PREFIX) or not base.lower().endswith(extension.lower()):
        return None
    stamp = base[len(FRAME_PREFIX) : len(base) - len(extension)]
    match = _FRAME_STAMP_RE.match(stamp)
    if match is None:
        return None
    parts = {key: int(value) for key, value in match.groupdict().items()}
    try:
        return datetime(
            parts["year"],
            parts["month"],
            parts["day"],
            parts["hour"],
            parts["minute"],
            parts["second"],
            parts["millis"] * 1000,
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def video_filename(moment: datetime) -> str:
    """Return the minute-precision video name for a batch ending at *moment*."""

    local = moment.astimezone()
    return f"{VIDEO_PREFIX}{local.strftime('%Y-%m-%d-%H-%M')}{VIDEO_EXTENSION}"


def unique_video_path(directory: Path, name: str) -> Path:
    """Return ``directory / name``, suffixed with a counter if that file already exists."""

    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem = Path(name).stem
    suffix = Path(name).suffix
    index = 1
    while True:
        candidate = directory / f"{stem}-{index}{suffix}"
        if not candidate.exists():
            return candidate
        index += 1


def _sort_key(frame: FrameFile) -> tuple[int, datetime, str]:
    if frame.timestamp is None:
        return (1, datetime.min.replace(tzinfo=timezone.utc), frame.name)
    return (0, frame.timestamp, frame.name)


def sort_frames(frames: Iterable[FrameFile]) -> list[FrameFile]:
    """Order frames oldest first; names that do not parse go last, by name."""

    return sorted(frames, key=_sort_key)


def list_frames(directory: Path, extension: str = ".jpg") -> list[FrameFile]:
    """Return the frame files in *directory* in chronological order.

    Raises :class:`OSError` when the directory cannot be listed.
    """

    wanted = extension.lower()
    found: list[FrameFile] = []
    for entry in directory.iterdir():
        if not entry.name.lower().endswith(wanted) or not entry.is_file():
            continue
        found.append(FrameFile(path=entry, timestamp=parse_frame_timestamp(entry.name, extension)))
    return sort_frames(found)


__all__ = [
    "FRAME_PREFIX",
    "FrameFile",
    "VIDEO_EXTENSION",
    "VIDEO_PREFIX",
    "format_frame_timestamp",
    "frame_filename",
    "list_frames",
    "parse_frame_timestamp",
    "sort_frames",
    "unique_video_path",
    "video_filename",
]
