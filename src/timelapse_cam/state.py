"""In-memory scheduling state shared by the recorder components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class SchedulerState:
    """Process-lifetime state of the capture/encode loop.

    Nothing here is persisted; after a restart the frame directory is the
    only source of truth.
    """

    batch_size: int
    captured_count: int = 0
    is_encoding: bool = False
    capture_in_flight: bool = False
    last_capture: float | None = None
    last_capture_at: datetime | None = None
    last_video: str | None = None
    failed_attempts: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    @property
    def threshold_reached(self) -> bool:
        return self.captured_count >= self.batch_size

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_size": self.batch_size,
            "captured_count": self.captured_count,
            "is_encoding": self.is_encoding,
            "capture_in_flight": self.capture_in_flight,
            "last_capture_at": self.last_capture_at.isoformat() if self.last_capture_at else None,
            "last_video": self.last_video,
        }


__all__ = ["SchedulerState"]
