"""Capability interfaces the controller core depends on.

Production wiring supplies the boto3-backed adapters in ``ess.aws_ops``;
tests supply in-memory fakes. Adapters return parsed model objects, so
tag parsing happens once at this boundary.
"""
from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from .models import Instance, RunSpec, Snapshot, Volume


class ComputeBackend(Protocol):
    def list_instances(self, desired_status: str) -> list[Instance]: ...

    def describe_instance(self, ref: str) -> Instance | None: ...

    def run_instance(self, spec: RunSpec) -> str: ...

    def stop_instance(self, ref: str, reason: str) -> None: ...


class StorageBackend(Protocol):
    def describe_volumes(
        self,
        states: Sequence[str],
        index: int | None = None,
        managed_only: bool = True,
    ) -> list[Volume]: ...

    def find_volume(self, volume_id: str) -> Volume | None: ...

    def describe_snapshots(
        self,
        states: Sequence[str],
        index: int | None = None,
        lineage: str | None = None,
        managed_only: bool = True,
    ) -> list[Snapshot]: ...

    def snapshot_visible(self, snapshot_id: str) -> bool: ...

    def create_snapshot(self, volume_id: str, tags: dict[str, str], description: str) -> str: ...

    def delete_volume(self, volume_id: str) -> None: ...

    def delete_snapshot(self, snapshot_id: str) -> None: ...


class DnsBackend(Protocol):
    def upsert_record(self, zone_id: str, name: str, record_type: str, ttl: int, value: str) -> None: ...

    def delete_record(self, zone_id: str, name: str, record_type: str, ttl: int, value: str) -> None: ...


class LoadBalancerBackend(Protocol):
    def register_targets(self, group_arn: str, addresses: Iterable[str]) -> None: ...

    def deregister_targets(self, group_arn: str, addresses: Iterable[str]) -> None: ...

    def describe_target_health(self, group_arn: str) -> list[str]: ...


class LockBackend(Protocol):
    def put_if_absent(self, lock_id: str, expires_at: int, reclaim_before: int | None = None) -> bool:
        """Insert the lock entry; return False if it already exists.

        With ``reclaim_before`` set, an existing entry whose expiry is
        older than that epoch second is overwritten instead.
        """
        ...

    def delete(self, lock_id: str, expires_at: int | None = None) -> bool:
        """Delete the lock entry; return False if it was absent.

        With ``expires_at`` set, only an entry carrying that expiry (the
        caller's own acquisition) is deleted.
        """
        ...


