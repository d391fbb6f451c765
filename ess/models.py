from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

RUNNING = "RUNNING"
STOPPED = "STOPPED"
TRANSITIONAL_STATES = frozenset({"PROVISIONING", "PENDING", "DEPROVISIONING", "STOPPING", "DEACTIVATING"})
IN_FLIGHT_SNAPSHOT_STATES = ("pending", "in-progress")

_INDEX_RE = re.compile(r"^\d{1,9}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_index(raw: str | None) -> int | None:
    """Parse a replica index tag value.

    Anything that is not a plain non-negative decimal integer yields None,
    which callers treat as "not part of this replica set".
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not _INDEX_RE.match(raw):
        return None
    return int(raw)


@dataclass(frozen=True)
class TagScheme:
    """Tag keys that mark resources owned by one replica set."""

    set_name: str

    @property
    def prefix(self) -> str:
        return f"ess:{self.set_name}:"

    @property
    def index_key(self) -> str:
        return f"{self.prefix}index"

    @property
    def managed_key(self) -> str:
        return f"{self.prefix}managed"

    @property
    def volume_key(self) -> str:
        return f"{self.prefix}volume-id"

    @property
    def snapshot_key(self) -> str:
        return f"{self.prefix}snapshot-id"

    def replica_tags(self, index: int, snapshot_id: str | None = None) -> dict[str, str]:
        tags = {self.index_key: str(index), self.managed_key: "true"}
        if snapshot_id:
            tags[self.snapshot_key] = snapshot_id
        return tags

    def snapshot_tags(self, index: int, volume_id: str) -> dict[str, str]:
        return {self.index_key: str(index), self.managed_key: "true", self.volume_key: volume_id}

    def index_of(self, tags: dict[str, str]) -> int | None:
        return parse_index(tags.get(self.index_key))

    def is_managed(self, tags: dict[str, str]) -> bool:
        return tags.get(self.managed_key) == "true"


@dataclass(frozen=True)
class Instance:
    """A compute task as seen by the controller."""

    ref: str
    status: str
    index: int | None
    private_ip: str | None = None
    volume_id: str | None = None
    stopped_at: datetime | None = None
    tags: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING


@dataclass(frozen=True)
class Volume:
    volume_id: str
    state: str  # creating|available|in-use|deleting|...
    created_at: datetime | None
    index: int | None
    tags: dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    state: str  # pending|completed|error
    started_at: datetime | None
    index: int | None
    source_volume_id: str | None
    lineage: str | None = None
    tags: dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class RunSpec:
    """Everything the compute backend needs to launch one replica."""

    index: int
    tags: dict[str, str]
    environment: dict[str, str]
    volume_size_gib: int
    snapshot_id: str | None = None
