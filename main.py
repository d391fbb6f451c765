from __future__ import annotations

import logging
import secrets

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ess.api_models import CycleReportOut, EventOut, StatusOut
from ess.db import Database
from ess.errors import ConfigError
from ess.handler import build_aws_controller
from ess.reconciler import Controller
from ess.runtime import RuntimeState
from ess.settings import configure_logging, load_settings

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings)

db = Database(settings.db_path)
runtime = RuntimeState()
controller: Controller | None = None

app = FastAPI(title="ECS StatefulSet Controller", version="0.1.0")
security = HTTPBasic(auto_error=False)


def get_controller() -> Controller:
    global controller
    if controller is None:
        try:
            controller = build_aws_controller(settings, events=db, runtime=runtime)
        except ConfigError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
    return controller


def require_operator(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
    """HTTP Basic check, active only when ESS_API_PASSWORD is set."""
    if not settings.api_password:
        return None
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    if settings.loop_enabled:
        get_controller().start()


@app.on_event("shutdown")
def shutdown() -> None:
    if controller is not None:
        controller.stop()


@app.get("/status", response_model=StatusOut)
def get_status():
    last = runtime.last()
    return {
        "set_name": settings.set_name,
        "desired_replicas": settings.desired_replicas,
        "loop_enabled": settings.loop_enabled,
        "cycles": runtime.cycles,
        "failures": runtime.failures,
        "last_cycle": last.to_dict() if last else None,
        "recent": [r.to_dict() for r in runtime.list_recent()],
    }


@app.get("/events", response_model=list[EventOut])
def get_events(limit: int = Query(50, ge=1, le=1000)):
    return db.latest_events(limit=limit)


@app.post("/reconcile", response_model=CycleReportOut)
def reconcile(user: str | None = Depends(require_operator)):
    logger.info("Manual reconcile requested by %s", user or "anonymous")
    report = get_controller().run_cycle()
    return report.to_dict()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
