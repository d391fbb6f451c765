from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable

from .backends import StorageBackend
from .errors import NotFoundError
from .models import IN_FLIGHT_SNAPSHOT_STATES, Snapshot, TagScheme, Volume, utc_now
from .polling import poll_until

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(snapshots: list[Snapshot]) -> list[Snapshot]:
    return sorted(snapshots, key=lambda s: s.started_at or _EPOCH, reverse=True)


class StorageReconciler:
    """Owns the volume -> snapshot -> volume lifecycle for every replica index.

    Volumes left behind by stopped replicas are snapshotted, then deleted
    once a completed snapshot of them exists. A new replica at the same
    index is restored from the newest completed snapshot.
    """

    def __init__(
        self,
        backend: StorageBackend,
        tags: TagScheme,
        orphan_min_age_s: int = 120,
        snapshot_wait_s: float = 60,
        snapshot_poll_s: float = 3,
        now: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.tags = tags
        self.orphan_min_age = timedelta(seconds=orphan_min_age_s)
        self.snapshot_wait_s = snapshot_wait_s
        self.snapshot_poll_s = snapshot_poll_s
        self.now = now
        self.clock = clock
        self.sleep = sleep

    def reconcile(self) -> None:
        self.reconcile_orphans()
        self.prune_duplicate_snapshots()

    def reconcile_orphans(self) -> None:
        logger.info("Looking for orphaned volumes")
        for volume in self.backend.describe_volumes(states=("available",)):
            if not self._old_enough(volume):
                continue
            if volume.index is None:
                logger.warning("Volume %s has no valid index tag, ignoring: %s", volume.volume_id, volume.tags)
                continue

            lineage = self.backend.describe_snapshots(
                states=("completed",) + IN_FLIGHT_SNAPSHOT_STATES, lineage=volume.volume_id, managed_only=False
            )
            if any(s.state == "completed" for s in lineage):
                logger.info(
                    "Deleting orphaned volume %s for index %d, a snapshot already exists",
                    volume.volume_id,
                    volume.index,
                )
                try:
                    self.backend.delete_volume(volume.volume_id)
                except NotFoundError:
                    logger.info("Volume %s already deleted", volume.volume_id)
            elif lineage:
                logger.info("Snapshot of volume %s is still in progress", volume.volume_id)
            else:
                self.snapshot_volume(volume.volume_id, volume.index)

    def snapshot_volume(self, volume_id: str, index: int) -> str:
        """Snapshot a volume and wait until the snapshot is describable."""
        logger.info("Creating snapshot for volume %s (index %d)", volume_id, index)
        snapshot_id = self.backend.create_snapshot(
            volume_id,
            tags=self.tags.snapshot_tags(index, volume_id),
            description=f"{self.tags.set_name}: index {index}",
        )
        logger.info("Created snapshot %s for volume %s", snapshot_id, volume_id)

        poll_until(
            lambda: self.backend.snapshot_visible(snapshot_id),
            description=f"snapshot {snapshot_id}",
            timeout_s=self.snapshot_wait_s,
            interval_s=self.snapshot_poll_s,
            clock=self.clock,
            sleep=self.sleep,
        )
        return snapshot_id

    def prune_duplicate_snapshots(self) -> None:
        logger.info("Pruning duplicate snapshots")
        grouped: dict[int, list[Snapshot]] = defaultdict(list)
        for snapshot in self.backend.describe_snapshots(states=("completed",)):
            if not snapshot.source_volume_id:
                continue
            # Never drop a recovery point while its source volume is alive.
            if self.backend.find_volume(snapshot.source_volume_id) is not None:
                continue
            if snapshot.index is None:
                continue
            grouped[snapshot.index].append(snapshot)

        for index, group in sorted(grouped.items()):
            if len(group) <= 1:
                continue
            latest, *duplicates = _newest_first(group)
            logger.info("Index %d: keeping snapshot %s, pruning %d older", index, latest.snapshot_id, len(duplicates))
            for snapshot in duplicates:
                try:
                    self.backend.delete_snapshot(snapshot.snapshot_id)
                    logger.info("Deleted snapshot %s", snapshot.snapshot_id)
                except NotFoundError:
                    logger.info("Snapshot %s already deleted", snapshot.snapshot_id)
                except Exception:
                    logger.warning("Failed to delete snapshot %s", snapshot.snapshot_id, exc_info=True)

    def has_unsnapshotted_volume(self, index: int) -> bool:
        """True if some live volume for ``index`` has no completed snapshot of its own."""
        volumes = self.backend.describe_volumes(states=("available", "in-use"), index=index, managed_only=False)
        for volume in volumes:
            if not self._has_completed_snapshot(volume.volume_id):
                logger.info("Volume %s for index %d has no snapshot", volume.volume_id, index)
                return True
        return False

    def latest_snapshot_id(self, index: int) -> str | None:
        snapshots = self.backend.describe_snapshots(states=("completed",), index=index)
        if not snapshots:
            logger.info("No snapshot found for index %d", index)
            return None
        return _newest_first(snapshots)[0].snapshot_id

    def _has_completed_snapshot(self, volume_id: str) -> bool:
        return bool(self.backend.describe_snapshots(states=("completed",), lineage=volume_id, managed_only=False))

    def _old_enough(self, volume: Volume) -> bool:
        # A young volume may not be tagged or attached yet.
        if volume.created_at is None:
            return False
        return self.now() - volume.created_at >= self.orphan_min_age
