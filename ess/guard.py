from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .backends import ComputeBackend, StorageBackend
from .models import IN_FLIGHT_SNAPSHOT_STATES, RUNNING, STOPPED, TRANSITIONAL_STATES, Instance, utc_now

logger = logging.getLogger(__name__)


class ReadinessGuard:
    """Detects cloud-side work that is still settling.

    Checked before the lock is requested; any positive answer ends the
    cycle without side effects.
    """

    def __init__(
        self,
        compute: ComputeBackend,
        storage: StorageBackend,
        grace_window_s: int = 600,
        now: Callable[[], datetime] = utc_now,
    ):
        self.compute = compute
        self.storage = storage
        self.grace_window = timedelta(seconds=grace_window_s)
        self.now = now

    def has_in_flight(self) -> bool:
        pending = self.storage.describe_snapshots(states=IN_FLIGHT_SNAPSHOT_STATES)
        if pending:
            logger.info("Snapshots still in progress (%d). Skipping this run.", len(pending))
            return True

        settling = [i for i in self._managed_instances() if self._is_settling(i)]
        if settling:
            logger.info(
                "Tasks still transitioning: %s. Skipping this run.",
                ", ".join(f"{i.ref} ({i.status})" for i in settling),
            )
            return True
        return False

    def _managed_instances(self) -> list[Instance]:
        instances = self.compute.list_instances(STOPPED) + self.compute.list_instances(RUNNING)
        return [i for i in instances if i.index is not None]

    def _is_settling(self, instance: Instance) -> bool:
        if instance.status in TRANSITIONAL_STATES:
            return True
        if instance.stopped_at is not None:
            return self.now() - instance.stopped_at < self.grace_window
        return False
