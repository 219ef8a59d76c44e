from __future__ import annotations

import json
from pathlib import Path

from timelapse_cam.event_log import EventLog


def test_record_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "events.jsonl"
    log = EventLog(path)
    log.record("capture", "capture_failed", "Error taking screenshot", metadata={"frame": "a.jpg", "code": None})
    log.record("encode", "video_created", "Video created")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["metadata"] == {"frame": "a.jpg"}

    reloaded = EventLog(path)
    assert [entry.event for entry in reloaded.tail()] == ["capture_failed", "video_created"]


def test_tail_filters_and_limits() -> None:
    log = EventLog(None, max_entries=3)
    for index in range(4):
        log.record("capture" if index % 2 else "encode", f"event-{index}", "message")

    assert [entry.event for entry in log.tail()] == ["event-1", "event-2", "event-3"]
    assert [entry.event for entry in log.tail(1)] == ["event-3"]
    assert [entry.event for entry in log.tail(category="capture")] == ["event-1", "event-3"]


def test_blank_category_defaults_to_system() -> None:
    log = EventLog(None)
    entry = log.record("  ", "startup", "Started")
    assert entry.category == "system"
    assert entry.to_dict().get("metadata") is None


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(
        "not json\n" + json.dumps({"event": "startup", "message": "ok", "timestamp": 1.0}) + "\n[]\n",
        encoding="utf-8",
    )
    entries = EventLog(path).tail()
    assert len(entries) == 1
    assert entries[0].category == "system"
    assert entries[0].timestamp == 1.0


def test_unwritable_file_keeps_entries_in_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    log = EventLog(blocker / "events.jsonl")

    entry = log.record("recovery", "scan_failed", "Unable to list frames")

    assert log.tail() == [entry]
    assert entry.category == "recovery"
