from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class CycleReport:
    outcome: str = "completed"  # in_flight|contended|completed|failed
    action: str | None = None  # started|stopped|deferred|no_index|noop
    replica_index: int | None = None
    running: int | None = None
    active: int | None = None
    desired: int | None = None
    error: str | None = None
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RuntimeState:
    """In-memory record of recent cycles for the status API."""

    def __init__(self, history: int = 20) -> None:
        self.lock = Lock()
        self.cycles = 0
        self.failures = 0
        self.recent: deque[CycleReport] = deque(maxlen=history)

    def record(self, report: CycleReport) -> None:
        with self.lock:
            self.cycles += 1
            if report.outcome == "failed":
                self.failures += 1
            self.recent.append(report)

    def last(self) -> CycleReport | None:
        with self.lock:
            return self.recent[-1] if self.recent else None

    def list_recent(self) -> list[CycleReport]:
        with self.lock:
            return list(self.recent)
