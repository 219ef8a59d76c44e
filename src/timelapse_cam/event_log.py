"""Recorder event history kept in memory and mirrored to a JSON-lines file."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Deque

logger = logging.getLogger(__name__)

EVENT_CATEGORIES: tuple[str, ...] = ("system", "capture", "encode", "recovery")


@dataclass(slots=True)
class RecorderEvent:
    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if not self.metadata:
            del payload["metadata"]
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "RecorderEvent | None":
        """Rebuild an event from one log line, or ``None`` if it is not one of ours."""

        if not isinstance(payload, dict):
            return None
        try:
            timestamp = float(payload["timestamp"])
            event = payload["event"]
            message = payload["message"]
        except (KeyError, TypeError, ValueError):
            return None
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category if category in EVENT_CATEGORIES else "system",
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Bounded recent-event history; ``path=None`` keeps it in memory only.

    A write failure on the backing file is logged and otherwise ignored.
    """

    def __init__(self, path: Path | str | None = Path("data/events.jsonl"), *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[RecorderEvent] = deque(maxlen=max_entries)
        self._path = Path(path) if path is not None else None
        if self._path is not None:
            self._reload(self._path)

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> RecorderEvent:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = RecorderEvent(
            timestamp=time.time(),
            category=category if category in EVENT_CATEGORIES else "system",
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        self._entries.append(entry)
        self._append(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[RecorderEvent]:
        """Return the most recent entries, oldest first."""

        entries = [entry for entry in self._entries if category is None or entry.category == category]
        if limit is not None:
            entries = entries[-max(1, int(limit)) :]
        return entries

    # ------------------------------------------------------------------
    def _reload(self, path: Path) -> None:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Unable to load event log %s: %s", path, exc)
            return
        for line in lines:
            try:
                entry = RecorderEvent.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: RecorderEvent) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("Unable to persist event log entry: %s", exc)


__all__ = ["EVENT_CATEGORIES", "EventLog", "RecorderEvent"]
