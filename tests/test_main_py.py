import base64
import importlib.util
import os

import pytest
from fastapi.testclient import TestClient


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("ess_controller_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def main_factory(monkeypatch, tmp_path):
    project_root = os.path.dirname(os.path.dirname(__file__))

    def load(password=None):
        monkeypatch.setenv("ESS_DB_PATH", str(tmp_path / "api.db"))
        monkeypatch.setenv("ESS_LOOP_ENABLED", "false")
        if password:
            monkeypatch.setenv("ESS_API_USER", "ops")
            monkeypatch.setenv("ESS_API_PASSWORD", password)
        else:
            monkeypatch.delenv("ESS_API_PASSWORD", raising=False)
        return _import_main_module(project_root)

    return load


def _attach(main, world):
    world.controller.runtime = main.runtime
    world.controller.events = main.db
    main.controller = world.controller


def test_reconcile_requires_basic_auth_when_password_set(main_factory, world):
    main = main_factory(password="s3cret")
    _attach(main, world)

    with TestClient(main.app) as client:
        assert client.post("/reconcile").status_code == 401
        assert client.post("/reconcile", headers=_basic_auth("ops", "wrong")).status_code == 401

        r = client.post("/reconcile", headers=_basic_auth("ops", "s3cret"))
        assert r.status_code == 200
        assert r.json()["outcome"] == "completed"
        assert r.json()["action"] == "started"


def test_status_reports_last_cycle(main_factory, world):
    main = main_factory()
    _attach(main, world)

    with TestClient(main.app) as client:
        body = client.get("/status").json()
        assert body["cycles"] == 0
        assert body["last_cycle"] is None

        client.post("/reconcile")

        body = client.get("/status").json()
        assert body["set_name"] == main.settings.set_name
        assert body["cycles"] == 1
        assert body["failures"] == 0
        assert body["last_cycle"]["replica_index"] == 0
        assert len(body["recent"]) == 1


def test_events_lists_journal(main_factory, world):
    main = main_factory()
    _attach(main, world)

    with TestClient(main.app) as client:
        client.post("/reconcile")

        events = client.get("/events", params={"limit": 5}).json()
        assert events[0]["message"] == "Cycle completed: started"
        assert client.get("/events", params={"limit": 0}).status_code == 422


def test_reconcile_without_aws_settings_is_unavailable(main_factory, monkeypatch):
    monkeypatch.delenv("ESS_CLUSTER_NAME", raising=False)
    main = main_factory()

    with TestClient(main.app) as client:
        r = client.post("/reconcile")

    assert r.status_code == 503
    assert "Missing required settings" in r.json()["detail"]
