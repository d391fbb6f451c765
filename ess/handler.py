from __future__ import annotations

import logging
from typing import Any

from .alerts import alert_cycle_failed
from .aws_ops import build_aws_backends
from .db import Database, SqliteLockBackend
from .reconciler import Controller, build_controller
from .runtime import RuntimeState
from .settings import Settings, configure_logging, load_settings

logger = logging.getLogger(__name__)

_controller: Controller | None = None


def build_aws_controller(
    settings: Settings,
    events: Database | None = None,
    runtime: RuntimeState | None = None,
) -> Controller:
    """Controller wired to ECS, EC2, Route 53, ELBv2 and the configured lock store."""
    settings.validate()
    aws = build_aws_backends(settings)
    lock_backend = aws.lock
    if settings.lock_backend == "sqlite":
        if events is None:
            events = Database(settings.db_path)
            events.init_db()
        lock_backend = SqliteLockBackend(events)
    return build_controller(
        settings,
        compute_backend=aws.compute,
        storage_backend=aws.storage,
        dns_backend=aws.dns,
        lb_backend=aws.lb,
        lock_backend=lock_backend,
        events=events,
        runtime=runtime,
        on_failure=lambda error: alert_cycle_failed(settings, error),
    )


def _get_controller() -> Controller:
    # One controller per warm process; clients and settings are reused across invocations.
    global _controller
    if _controller is None:
        settings = load_settings()
        configure_logging(settings)
        _controller = build_aws_controller(settings)
    return _controller


def handler(event: dict[str, Any] | None, context: Any = None) -> dict[str, Any]:
    """Scheduled or task-state-change event entry point. Runs one cycle."""
    event = event or {}
    logger.info("Invoked by %s from %s", event.get("detail-type", "direct call"), event.get("source", "unknown"))
    report = _get_controller().run_cycle()
    return report.to_dict()
