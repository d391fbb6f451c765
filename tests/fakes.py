"""In-memory stand-ins for the five cloud backends.

Every mutating call is appended to a shared ``calls`` list so tests can
assert on ordering across backends.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from ess.errors import NotFoundError
from ess.models import RUNNING, STOPPED, Instance, RunSpec, Snapshot, TagScheme, Volume


class FakeClock:
    """Drives ``now``/``monotonic``/``sleep`` from one counter."""

    def __init__(self, start: datetime | None = None):
        self.start = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    def time(self) -> float:
        return self.now().timestamp()

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds


class FakeStorage:
    def __init__(self, tags: TagScheme, clock: FakeClock, calls: list):
        self.tags = tags
        self.clock = clock
        self.calls = calls
        self.volumes: dict[str, Volume] = {}
        self.snapshots: dict[str, Snapshot] = {}
        self.invisible_polls = 0
        self.fail_snapshot_deletes: set[str] = set()
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq:04d}"

    # helpers ---------------------------------------------------------------

    def add_volume(
        self,
        index: int | None,
        state: str = "available",
        age_s: float = 300,
        managed: bool = True,
        raw_index: str | None = None,
    ) -> Volume:
        tags = {self.tags.index_key: raw_index if raw_index is not None else str(index)}
        if managed:
            tags[self.tags.managed_key] = "true"
        vol = Volume(
            volume_id=self._next("vol"),
            state=state,
            created_at=self.clock.now() - timedelta(seconds=age_s),
            index=index,
            tags=tags,
        )
        self.volumes[vol.volume_id] = vol
        return vol

    def add_snapshot(
        self,
        index: int,
        source_volume_id: str,
        state: str = "completed",
        age_s: float = 600,
    ) -> Snapshot:
        tags = self.tags.snapshot_tags(index, source_volume_id)
        snap = Snapshot(
            snapshot_id=self._next("snap"),
            state=state,
            started_at=self.clock.now() - timedelta(seconds=age_s),
            index=index,
            source_volume_id=source_volume_id,
            lineage=source_volume_id,
            tags=tags,
        )
        self.snapshots[snap.snapshot_id] = snap
        return snap

    def complete_pending(self) -> None:
        for sid, snap in list(self.snapshots.items()):
            if snap.state in ("pending", "in-progress"):
                self.snapshots[sid] = replace(snap, state="completed")

    # StorageBackend ----------------------------------------------------------

    def describe_volumes(self, states, index=None, managed_only=True):
        out = []
        for v in self.volumes.values():
            if v.state not in states:
                continue
            if index is not None and v.index != index:
                continue
            if managed_only and not self.tags.is_managed(v.tags):
                continue
            out.append(v)
        return out

    def find_volume(self, volume_id):
        return self.volumes.get(volume_id)

    def describe_snapshots(self, states, index=None, lineage=None, managed_only=True):
        out = []
        for s in self.snapshots.values():
            if s.state not in states:
                continue
            if index is not None and s.index != index:
                continue
            if lineage is not None and s.lineage != lineage:
                continue
            if managed_only and not self.tags.is_managed(s.tags):
                continue
            out.append(s)
        return out

    def snapshot_visible(self, snapshot_id):
        if self.invisible_polls > 0:
            self.invisible_polls -= 1
            return False
        return snapshot_id in self.snapshots

    def create_snapshot(self, volume_id, tags, description):
        self.calls.append(("create_snapshot", volume_id))
        snap = Snapshot(
            snapshot_id=self._next("snap"),
            state="pending",
            started_at=self.clock.now(),
            index=self.tags.index_of(tags),
            source_volume_id=volume_id,
            lineage=tags.get(self.tags.volume_key),
            tags=dict(tags),
        )
        self.snapshots[snap.snapshot_id] = snap
        return snap.snapshot_id

    def delete_volume(self, volume_id):
        self.calls.append(("delete_volume", volume_id))
        if volume_id not in self.volumes:
            raise NotFoundError(f"volume {volume_id}")
        del self.volumes[volume_id]

    def delete_snapshot(self, snapshot_id):
        self.calls.append(("delete_snapshot", snapshot_id))
        if snapshot_id in self.fail_snapshot_deletes:
            raise RuntimeError(f"snapshot {snapshot_id} is in use by an AMI")
        if snapshot_id not in self.snapshots:
            raise NotFoundError(f"snapshot {snapshot_id}")
        del self.snapshots[snapshot_id]


class FakeCompute:
    def __init__(self, tags: TagScheme, clock: FakeClock, calls: list, storage: FakeStorage | None = None):
        self.tags = tags
        self.clock = clock
        self.calls = calls
        self.storage = storage
        self.tasks: dict[str, Instance] = {}
        self.desired: dict[str, str] = {}
        self.runs: list[RunSpec] = []
        # Number of describe calls before a task (or its address) shows up.
        self.hidden_describes = 0
        self.address_after_describes = 0
        self._pending_address: dict[str, tuple[int, str]] = {}
        self._seq = 0

    def add_task(
        self,
        index: int | None,
        status: str = RUNNING,
        ip: str | None = "auto",
        desired: str = RUNNING,
        stopped_at: datetime | None = None,
    ) -> Instance:
        self._seq += 1
        ref = f"arn:aws:ecs:us-east-1:123456789012:task/c1/{self._seq:04d}"
        tags = self.tags.replica_tags(index) if index is not None else {}
        inst = Instance(
            ref=ref,
            status=status,
            index=index,
            private_ip=f"10.0.0.{self._seq}" if ip == "auto" else ip,
            stopped_at=stopped_at,
            tags=tags,
        )
        self.tasks[ref] = inst
        self.desired[ref] = desired
        return inst

    def running(self) -> list[Instance]:
        return [t for ref, t in self.tasks.items() if self.desired[ref] == RUNNING and t.status == RUNNING]

    def settle(self) -> None:
        """Finish every pending stop and release its volume."""
        for ref, task in list(self.tasks.items()):
            if task.status == "STOPPING":
                self.tasks[ref] = replace(task, status=STOPPED, stopped_at=self.clock.now())
                if self.storage is not None and task.volume_id in self.storage.volumes:
                    vol = self.storage.volumes[task.volume_id]
                    self.storage.volumes[task.volume_id] = replace(vol, state="available")

    # ComputeBackend ----------------------------------------------------------

    def list_instances(self, desired_status):
        return [t for ref, t in self.tasks.items() if self.desired[ref] == desired_status]

    def describe_instance(self, ref):
        if self.hidden_describes > 0:
            self.hidden_describes -= 1
            return None
        if ref in self._pending_address:
            remaining, ip = self._pending_address[ref]
            if remaining <= 0:
                del self._pending_address[ref]
                self.tasks[ref] = replace(self.tasks[ref], private_ip=ip)
            else:
                self._pending_address[ref] = (remaining - 1, ip)
        return self.tasks.get(ref)

    def run_instance(self, spec):
        self.calls.append(("run_instance", spec.index))
        self.runs.append(spec)
        self._seq += 1
        ref = f"arn:aws:ecs:us-east-1:123456789012:task/c1/{self._seq:04d}"
        ip = f"10.0.0.{self._seq}"
        volume_id = None
        if self.storage is not None:
            volume_id = f"vol-task-{self._seq:04d}"
            self.storage.volumes[volume_id] = Volume(
                volume_id=volume_id,
                state="in-use",
                created_at=self.clock.now(),
                index=spec.index,
                tags=dict(spec.tags),
            )
        if self.address_after_describes:
            self._pending_address[ref] = (self.address_after_describes, ip)
            ip = None
        self.tasks[ref] = Instance(
            ref=ref,
            status=RUNNING,
            index=spec.index,
            private_ip=ip,
            volume_id=volume_id,
            tags=dict(spec.tags),
        )
        self.desired[ref] = RUNNING
        return ref

    def stop_instance(self, ref, reason):
        self.calls.append(("stop_instance", ref))
        self.desired[ref] = STOPPED
        self.tasks[ref] = replace(self.tasks[ref], status="STOPPING")


class FakeDns:
    def __init__(self, calls: list):
        self.calls = calls
        self.records: dict[str, tuple[str, int, str]] = {}
        self.fail_deletes = False

    def upsert_record(self, zone_id, name, record_type, ttl, value):
        self.calls.append(("upsert_record", name, value))
        self.records[name] = (record_type, ttl, value)

    def delete_record(self, zone_id, name, record_type, ttl, value):
        self.calls.append(("delete_record", name, value))
        if self.fail_deletes:
            raise RuntimeError("Route 53 throttled the request")
        if self.records.get(name) != (record_type, ttl, value):
            raise NotFoundError(f"record {name}")
        del self.records[name]


class FakeLoadBalancer:
    def __init__(self, calls: list):
        self.calls = calls
        self.targets: set[str] = set()

    def register_targets(self, group_arn, addresses):
        addresses = list(addresses)
        self.calls.append(("register_targets", tuple(addresses)))
        self.targets.update(addresses)

    def deregister_targets(self, group_arn, addresses):
        addresses = list(addresses)
        self.calls.append(("deregister_targets", tuple(addresses)))
        self.targets.difference_update(addresses)

    def describe_target_health(self, group_arn):
        return sorted(self.targets)


class FakeLock:
    def __init__(self, calls: list):
        self.calls = calls
        self.entries: dict[str, int] = {}

    def put_if_absent(self, lock_id, expires_at, reclaim_before=None):
        self.calls.append(("put_if_absent", lock_id))
        current = self.entries.get(lock_id)
        if current is not None and (reclaim_before is None or current >= reclaim_before):
            return False
        self.entries[lock_id] = expires_at
        return True

    def delete(self, lock_id, expires_at=None):
        self.calls.append(("delete_lock", lock_id))
        if lock_id not in self.entries:
            return False
        if expires_at is not None and self.entries[lock_id] != expires_at:
            return False
        del self.entries[lock_id]
        return True
