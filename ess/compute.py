from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Callable

from .backends import ComputeBackend
from .models import RUNNING, Instance, RunSpec, TagScheme
from .polling import poll_until

logger = logging.getLogger(__name__)

INDEX_PLACEHOLDER = "$index"
STOP_REASON = "Scaling down replicas to match StatefulSet configuration"


def render_environment(template: dict[str, str], index: int) -> dict[str, str]:
    """Substitute the replica index into every override value.

    ``{"PEER": "node-$index.db.local"}`` becomes ``{"PEER": "node-2.db.local"}``
    for index 2.
    """
    return {name: value.replace(INDEX_PLACEHOLDER, str(index)) for name, value in template.items()}


class ComputeManager:
    """Starts and stops individual replica tasks."""

    def __init__(
        self,
        backend: ComputeBackend,
        tags: TagScheme,
        environment: dict[str, str] | None = None,
        volume_size_gib: int = 20,
        task_wait_s: float = 120,
        task_poll_s: float = 3,
        address_wait_s: float | None = 120,
        address_poll_s: float = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.tags = tags
        self.environment = dict(environment or {})
        self.volume_size_gib = volume_size_gib
        self.task_wait_s = task_wait_s
        self.task_poll_s = task_poll_s
        # None (or 0) waits for an address indefinitely.
        self.address_wait_s = address_wait_s or None
        self.address_poll_s = address_poll_s
        self.clock = clock
        self.sleep = sleep

    def list_active(self) -> list[Instance]:
        """Instances with desired status RUNNING that carry a valid index tag."""
        active = [i for i in self.backend.list_instances(RUNNING) if i.index is not None]
        active.sort(key=lambda i: i.index)
        dupes = [idx for idx, n in Counter(i.index for i in active).items() if n > 1]
        if dupes:
            logger.warning("Multiple active tasks share index %s", dupes)
        return active

    def render_environment(self, index: int) -> dict[str, str]:
        return render_environment(self.environment, index)

    def start(self, index: int, snapshot_id: str | None = None) -> Instance:
        logger.info(
            "Starting task with index %d%s",
            index,
            f" from snapshot {snapshot_id}" if snapshot_id else "",
        )
        spec = RunSpec(
            index=index,
            tags=self.tags.replica_tags(index, snapshot_id),
            environment=self.render_environment(index),
            volume_size_gib=self.volume_size_gib,
            snapshot_id=snapshot_id,
        )
        ref = self.backend.run_instance(spec)
        return poll_until(
            lambda: self.backend.describe_instance(ref),
            description=f"task {ref}",
            timeout_s=self.task_wait_s,
            interval_s=self.task_poll_s,
            clock=self.clock,
            sleep=self.sleep,
        )

    def await_network_address(self, instance: Instance) -> Instance:
        def check() -> Instance | None:
            current = self.backend.describe_instance(instance.ref)
            if current is not None and current.private_ip:
                return current
            return None

        found = poll_until(
            check,
            description=f"private address of task {instance.ref}",
            timeout_s=self.address_wait_s,
            interval_s=self.address_poll_s,
            clock=self.clock,
            sleep=self.sleep,
        )
        logger.info("Task %s has address %s", found.ref, found.private_ip)
        return found

    def stop(self, instance: Instance) -> None:
        # Returns without waiting for STOPPED; the readiness guard holds off
        # the next cycle until the teardown settles.
        current = self.backend.describe_instance(instance.ref)
        if current is None:
            logger.warning("Task not found: %s", instance.ref)
            return
        logger.info("Stopping task %s (index %s)", instance.ref, instance.index)
        self.backend.stop_instance(instance.ref, STOP_REASON)
