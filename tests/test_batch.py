"""Tests for batch accounting and the batch encoder."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from timelapse_cam.batch import BatchAccumulator, BatchEncoder, EncodeOutcome
from timelapse_cam.event_log import EventLog
from timelapse_cam.frames import frame_filename, list_frames, video_filename
from timelapse_cam.media import MediaResult, MediaTool, read_manifest
from timelapse_cam.state import SchedulerState

BASE_TIME = datetime(2024, 5, 1, 23, 59, 30, tzinfo=timezone.utc)


class RecordingTool(MediaTool):
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: list[tuple[list[Path], Path]] = []
        self.manifest_present: list[bool] = []

    async def capture_frame(self, destination: Path) -> MediaResult:  # pragma: no cover - unused
        raise AssertionError("capture not expected")

    async def encode_video(self, manifest: Path, destination: Path) -> MediaResult:
        self.manifest_present.append(manifest.exists())
        self.calls.append((read_manifest(manifest), destination))
        if not self.ok:
            destination.write_bytes(b"partial")
            return MediaResult.failure("exit code 1")
        destination.write_bytes(b"mp4")
        return MediaResult.success()


class RaisingTool(RecordingTool):
    async def encode_video(self, manifest: Path, destination: Path) -> MediaResult:
        raise RuntimeError("encoder vanished")


def _seed(directory: Path, count: int) -> list[Path]:
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for index in range(count):
        path = directory / frame_filename(BASE_TIME + timedelta(seconds=10 * index))
        path.write_bytes(b"jpeg")
        paths.append(path)
    return paths


def _encoder(tmp_path: Path, tool: MediaTool, state: SchedulerState, **kwargs) -> BatchEncoder:
    return BatchEncoder(
        tool,
        state,
        video_dir=tmp_path / "videos",
        manifest_path=tmp_path / "frames" / "filelist.txt",
        **kwargs,
    )


def test_accumulator_reports_threshold() -> None:
    state = SchedulerState(batch_size=2)
    accumulator = BatchAccumulator(state)
    assert accumulator.record_capture() is False
    assert accumulator.progress() == "1/2"
    assert accumulator.record_capture() is True
    assert accumulator.progress() == "2/2"
    accumulator.reset()
    assert state.captured_count == 0


def test_encoder_consumes_only_oldest_batch(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    seeded = _seed(frame_dir, 4)
    bystander = frame_dir / "notes.txt"
    bystander.write_text("keep me", encoding="utf-8")
    state = SchedulerState(batch_size=3, captured_count=3, is_encoding=True)
    tool = RecordingTool()
    events = EventLog(None)
    encoder = _encoder(tmp_path, tool, state, event_log=events)

    result = asyncio.run(encoder.encode(list_frames(frame_dir)))

    assert result.outcome is EncodeOutcome.ENCODED
    assert [path.name for path in result.frames] == [path.name for path in seeded[:3]]
    assert tool.manifest_present == [True]
    assert [path.name for path in tool.calls[0][0]] == [path.name for path in seeded[:3]]
    assert result.video is not None
    assert result.video.name == video_filename(BASE_TIME + timedelta(seconds=20))
    assert sorted(path.name for path in frame_dir.iterdir()) == sorted([seeded[3].name, "notes.txt"])
    assert state.captured_count == 0
    assert state.is_encoding is False
    assert events.tail(category="encode")[-1].event == "video_created"


def test_encoder_aborts_on_shortfall(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    _seed(frame_dir, 2)
    state = SchedulerState(batch_size=3, captured_count=3, is_encoding=True)
    tool = RecordingTool()

    result = asyncio.run(_encoder(tmp_path, tool, state).encode(list_frames(frame_dir)))

    assert result.outcome is EncodeOutcome.SHORTFALL
    assert result.rescan is False
    assert tool.calls == []
    assert len(list(frame_dir.iterdir())) == 2
    assert state.is_encoding is False
    assert state.captured_count == 3


def test_encoder_failure_preserves_frames_and_removes_manifest(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    seeded = _seed(frame_dir, 3)
    state = SchedulerState(batch_size=3, captured_count=3, is_encoding=True)

    result = asyncio.run(_encoder(tmp_path, RecordingTool(ok=False), state).encode(list_frames(frame_dir)))

    assert result.outcome is EncodeOutcome.FAILED
    assert "exit code 1" in (result.reason or "")
    assert all(path.exists() for path in seeded)
    assert not (frame_dir / "filelist.txt").exists()
    assert state.is_encoding is False
    assert state.captured_count == 3


def test_encoder_treats_raising_tool_as_failure(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    _seed(frame_dir, 3)
    state = SchedulerState(batch_size=3, is_encoding=True)

    result = asyncio.run(_encoder(tmp_path, RaisingTool(), state).encode(list_frames(frame_dir)))

    assert result.outcome is EncodeOutcome.FAILED
    assert "encoder vanished" in (result.reason or "")
    assert state.is_encoding is False


def test_encoder_requires_flag(tmp_path: Path) -> None:
    state = SchedulerState(batch_size=1)
    encoder = _encoder(tmp_path, RecordingTool(), state)
    with pytest.raises(RuntimeError):
        asyncio.run(encoder.encode([]))


def test_video_name_collision_gets_suffix(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    _seed(frame_dir, 2)
    existing = tmp_path / "videos" / video_filename(BASE_TIME + timedelta(seconds=10))
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"earlier")
    state = SchedulerState(batch_size=2, is_encoding=True)

    result = asyncio.run(_encoder(tmp_path, RecordingTool(), state).encode(list_frames(frame_dir)))

    assert result.video is not None
    assert result.video.name == existing.stem + "-1.mp4"
    assert existing.read_bytes() == b"earlier"


def test_repeatedly_unparseable_batch_is_quarantined(tmp_path: Path) -> None:
    frame_dir = tmp_path / "frames"
    _seed(frame_dir, 1)
    (frame_dir / "frame-garbled.jpg").write_bytes(b"jpeg")
    quarantine = tmp_path / "quarantine"
    state = SchedulerState(batch_size=2, captured_count=2)
    encoder = _encoder(tmp_path, RecordingTool(), state, quarantine_dir=quarantine, max_attempts=2)

    state.is_encoding = True
    first = asyncio.run(encoder.encode(list_frames(frame_dir)))
    assert first.outcome is EncodeOutcome.UNPARSEABLE
    assert len(list(frame_dir.iterdir())) == 2

    state.is_encoding = True
    second = asyncio.run(encoder.encode(list_frames(frame_dir)))
    assert second.outcome is EncodeOutcome.QUARANTINED
    assert second.rescan is True
    assert list(frame_dir.iterdir()) == []
    assert sorted(path.name for path in quarantine.iterdir())[-1] == "frame-garbled.jpg"
    assert state.captured_count == 0
    assert state.failed_attempts == {}
