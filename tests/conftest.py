import os
import sys
from types import SimpleNamespace

import pytest

# Ensure project root is importable (so `import ess` and `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ess.models import TagScheme  # noqa: E402
from ess.reconciler import build_controller  # noqa: E402
from ess.settings import Settings  # noqa: E402
from fakes import FakeClock, FakeCompute, FakeDns, FakeLoadBalancer, FakeLock, FakeStorage  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        set_name="db",
        desired_replicas=3,
        cluster="c1",
        task_definition="arn:aws:ecs:us-east-1:123456789012:task-definition/db:7",
        container_name="db",
        subnet_ids=("subnet-a", "subnet-b"),
        security_group_ids=("sg-1",),
        task_environment={"PEERS": "db-$index.db.internal", "ROLE": "replica"},
        hosted_zone_id="Z0EXAMPLE",
        dns_domain="db.internal.",
        target_group_arn="arn:aws:elasticloadbalancing:us-east-1:123456789012:targetgroup/db/abc",
        lock_table="locks",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def world(settings, clock):
    """Fake backends plus a controller wired around them."""
    calls: list = []
    tags = TagScheme(settings.set_name)
    storage = FakeStorage(tags, clock, calls)
    compute = FakeCompute(tags, clock, calls, storage=storage)
    dns = FakeDns(calls)
    lb = FakeLoadBalancer(calls)
    lock = FakeLock(calls)
    failures: list[str] = []
    controller = build_controller(
        settings,
        compute_backend=compute,
        storage_backend=storage,
        dns_backend=dns,
        lb_backend=lb,
        lock_backend=lock,
        on_failure=failures.append,
        now=clock.now,
        clock=clock.monotonic,
        sleep=clock.sleep,
    )
    return SimpleNamespace(
        calls=calls,
        tags=tags,
        storage=storage,
        compute=compute,
        dns=dns,
        lb=lb,
        lock=lock,
        failures=failures,
        controller=controller,
        clock=clock,
    )
