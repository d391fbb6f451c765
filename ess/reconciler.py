from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime
from threading import Event, Thread
from typing import Callable

from . import models
from .backends import ComputeBackend, DnsBackend, LoadBalancerBackend, LockBackend, StorageBackend
from .compute import ComputeManager
from .db import Database
from .guard import ReadinessGuard
from .lock import LockManager
from .models import Instance
from .network import NetworkReconciler
from .runtime import CycleReport, RuntimeState, utc_now
from .settings import Settings
from .storage import StorageReconciler

logger = logging.getLogger(__name__)


class Controller:
    """Runs the control loop: guard, lock, storage, replicas, network, storage, release.

    Every step re-derives its view from live backend state, so a failed or
    skipped cycle is simply retried from scratch by the next invocation.
    """

    def __init__(
        self,
        settings: Settings,
        lock: LockManager,
        guard: ReadinessGuard,
        storage: StorageReconciler,
        compute: ComputeManager,
        network: NetworkReconciler,
        events: Database | None = None,
        runtime: RuntimeState | None = None,
        on_failure: Callable[[str], object] | None = None,
    ):
        self.settings = settings
        self.lock = lock
        self.guard = guard
        self.storage = storage
        self.compute = compute
        self.network = network
        self.events = events
        self.runtime = runtime or RuntimeState()
        self.on_failure = on_failure
        self._stop = Event()
        self._thr: Thread | None = None

    @property
    def desired(self) -> int:
        return self.settings.desired_replicas

    # -- loop ---------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="ess-control-loop", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        logger.info("Control loop thread started (every %ss)", self.settings.poll_interval_s)
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                # Lock release and guard/lock backend failures land here.
                logger.exception("Control loop tick failed")
            self._stop.wait(max(1, self.settings.poll_interval_s))

    # -- cycle --------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        logger.info("*** Starting control loop ***")
        report = CycleReport(desired=self.desired)

        if self.guard.has_in_flight():
            logger.info("Has in-flight operations, skipping this run")
            report.outcome = "in_flight"
            return self._finish(report)

        lock_id = self.settings.lock_id
        if not self.lock.acquire(lock_id):
            report.outcome = "contended"
            return self._finish(report)

        try:
            self.storage.reconcile()

            replicas = self.compute.list_active()
            report.running = sum(1 for r in replicas if r.is_running)
            report.active = len(replicas)
            logger.info("Active tasks: %d, Running: %d, Desired: %d", report.active, report.running, self.desired)

            live = self._reconcile_replicas(replicas, report)

            self.network.sync_live(live)
            self.network.prune_drift(live)

            self.storage.reconcile()
            logger.info("*** Ending control loop ***")
        except Exception as e:
            logger.exception("Error in controller")
            report.outcome = "failed"
            report.error = f"{type(e).__name__}: {e}"
            self._journal("ERROR", f"Cycle failed: {report.error}", report.replica_index)
            if self.on_failure is not None:
                self.on_failure(report.error)
        finally:
            self.lock.release(lock_id)

        return self._finish(report)

    def _reconcile_replicas(self, replicas: list[Instance], report: CycleReport) -> list[Instance]:
        """Start or stop at most one replica. Returns the set the network step should serve."""
        if report.running < self.desired:
            return self._scale_up(replicas, report)
        if report.active > self.desired:
            return self._scale_down(replicas, report)
        logger.info("Desired replica count is already met")
        report.action = "noop"
        return replicas

    def _scale_up(self, replicas: list[Instance], report: CycleReport) -> list[Instance]:
        used = {r.index for r in replicas}
        index = next((i for i in range(self.desired) if i not in used), None)
        if index is None:
            logger.info("No available index found to start a new task")
            report.action = "no_index"
            return replicas

        report.replica_index = index
        if self.storage.has_unsnapshotted_volume(index):
            logger.info("Index %d has volumes without a snapshot, deferring recreation", index)
            report.action = "deferred"
            self._journal("INFO", "Deferred start: volume not yet snapshotted", index)
            return replicas

        snapshot_id = self.storage.latest_snapshot_id(index)
        instance = self.compute.start(index, snapshot_id)
        report.action = "started"
        self._journal(
            "INFO",
            f"Started task {instance.ref}" + (f" from snapshot {snapshot_id}" if snapshot_id else ""),
            index,
        )

        instance = self.compute.await_network_address(instance)
        self.network.upsert_record(instance)
        return replicas + [instance]

    def _scale_down(self, replicas: list[Instance], report: CycleReport) -> list[Instance]:
        victim = max(replicas, key=lambda r: r.index)
        report.replica_index = victim.index
        logger.info("Tearing down task for index %d", victim.index)

        # Traffic is drained before the stop is issued.
        self.network.deregister_target(victim)
        self.network.delete_record(victim)
        self.compute.stop(victim)

        report.action = "stopped"
        self._journal("INFO", f"Stopped task {victim.ref}", victim.index)
        return [r for r in replicas if r.ref != victim.ref]

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at = utc_now()
        if report.outcome != "failed":
            summary = f"Cycle {report.outcome}" + (f": {report.action}" if report.action else "")
            self._journal("INFO", summary, report.replica_index)
        self.runtime.record(report)
        return report

    def _journal(self, level: str, message: str, replica_index: int | None = None) -> None:
        if self.events is None:
            return
        try:
            self.events.log_event(level, message, replica_index=replica_index)
        except sqlite3.Error:
            logger.warning("Could not write event journal entry", exc_info=True)


def build_controller(
    settings: Settings,
    compute_backend: ComputeBackend,
    storage_backend: StorageBackend,
    dns_backend: DnsBackend,
    lb_backend: LoadBalancerBackend,
    lock_backend: LockBackend,
    events: Database | None = None,
    runtime: RuntimeState | None = None,
    on_failure: Callable[[str], object] | None = None,
    now: Callable[[], datetime] = models.utc_now,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Controller:
    """Wire the components around the given backends."""
    tags = models.TagScheme(settings.set_name)
    return Controller(
        settings=settings,
        lock=LockManager(lock_backend, ttl_s=settings.lock_ttl_s, reclaim_expired=settings.lock_reclaim_expired),
        guard=ReadinessGuard(compute_backend, storage_backend, grace_window_s=settings.grace_window_s, now=now),
        storage=StorageReconciler(
            storage_backend,
            tags,
            orphan_min_age_s=settings.orphan_min_age_s,
            snapshot_wait_s=settings.snapshot_wait_s,
            snapshot_poll_s=settings.snapshot_poll_s,
            now=now,
            clock=clock,
            sleep=sleep,
        ),
        compute=ComputeManager(
            compute_backend,
            tags,
            environment=settings.task_environment,
            volume_size_gib=settings.volume_size_gib,
            task_wait_s=settings.task_wait_s,
            task_poll_s=settings.task_poll_s,
            address_wait_s=settings.address_wait_s,
            address_poll_s=settings.address_poll_s,
            clock=clock,
            sleep=sleep,
        ),
        network=NetworkReconciler(
            dns_backend,
            lb_backend,
            set_name=settings.set_name,
            hosted_zone_id=settings.hosted_zone_id,
            dns_domain=settings.dns_domain,
            target_group_arn=settings.target_group_arn,
            dns_ttl_s=settings.dns_ttl_s,
        ),
        events=events,
        runtime=runtime,
        on_failure=on_failure,
    )
