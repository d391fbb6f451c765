from __future__ import annotations

from pydantic import BaseModel, Field


class CycleReportOut(BaseModel):
    outcome: str = Field(..., description="in_flight|contended|completed|failed")
    action: str | None = Field(None, description="started|stopped|deferred|no_index|noop")
    replica_index: int | None = None
    running: int | None = None
    active: int | None = None
    desired: int | None = None
    error: str | None = None
    started_at: str
    finished_at: str | None = None


class StatusOut(BaseModel):
    set_name: str
    desired_replicas: int
    loop_enabled: bool
    cycles: int
    failures: int
    last_cycle: CycleReportOut | None = None
    recent: list[CycleReportOut] = Field(default_factory=list)


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    replica_index: int | None = None
    message: str
