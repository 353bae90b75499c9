"""HTTP control API for rollctl.

Run with: uvicorn main:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import secrets
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from rollctl import __version__, db
from rollctl.errors import InvalidManifest, RolloutInProgress
from rollctl.manifest import parse_manifest
from rollctl.rollouts import RolloutController, build_controller
from rollctl.settings import settings
from rollctl.supervisor import Supervisor

app = FastAPI(title="rollctl", version=__version__)
security = HTTPBasic(auto_error=False)

_controller: RolloutController | None = None
_supervisor: Supervisor | None = None


def get_controller() -> RolloutController:
    global _controller
    if _controller is None:
        _controller = build_controller(supervised=settings.supervise)
    return _controller


def start_supervisor() -> None:
    global _supervisor
    if not settings.supervise or _supervisor is not None:
        return
    controller = get_controller()
    _supervisor = Supervisor(controller, controller.driver)
    _supervisor.start()


def require_operator(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
    """HTTP Basic auth for mutating endpoints, enforced once ROLLCTL_API_PASSWORD is set."""
    if not settings.api_password:
        return "anonymous"
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
    start_supervisor()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "version": __version__}


@app.post("/deployments")
def create_deployment(
    manifest: dict[str, Any] = Body(...),
    user: str = Depends(require_operator),
    controller: RolloutController = Depends(get_controller),
) -> dict[str, Any]:
    try:
        descriptor = parse_manifest(manifest, source="request body")
    except InvalidManifest as e:
        raise HTTPException(status_code=422, detail=str(e))

    db.log_event("INFO", f"Deployment of {descriptor.image} requested by {user}", app=descriptor.container_name)
    try:
        record = controller.deploy(descriptor)
    except RolloutInProgress as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return record.to_dict()


@app.post("/rollouts/abort")
def abort_rollout(
    user: str = Depends(require_operator),
    controller: RolloutController = Depends(get_controller),
) -> dict[str, Any]:
    current = controller.current()
    aborted = controller.abort()
    return {"aborted": aborted, "rollout_id": current.id if current else None, "requested_by": user}


@app.get("/rollouts")
def list_rollouts(app_name: Optional[str] = Query(None, alias="app"), limit: int = Query(50, ge=1, le=1000)) -> list[dict[str, Any]]:
    return [r.to_dict() for r in db.list_rollouts(app=app_name, limit=limit)]


@app.get("/rollouts/current")
def current_rollout(controller: RolloutController = Depends(get_controller)) -> Optional[dict[str, Any]]:
    record = controller.current()
    return record.to_dict() if record else None


@app.get("/rollouts/{rollout_id}")
def get_rollout(rollout_id: str) -> dict[str, Any]:
    row = db.get_rollout(rollout_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown rollout")
    return row.to_dict()


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
    return db.latest_events(limit)
