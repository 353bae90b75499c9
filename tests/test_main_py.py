import base64
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import main
from rollctl.health import HealthGate
from rollctl.rollouts import RolloutController, RolloutLock

from conftest import FakeDriver, FakeNotifier, scripted_probe


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


MANIFEST = {
    "image": "app:v2",
    "ports": ["8080:80"],
    "health": {"path": "/health", "interval_ms": 10, "timeout_ms": 200, "retries": 1},
}


@pytest.fixture
def controller(previous_container):
    return RolloutController(
        driver=FakeDriver(running=[previous_container]),
        gate=HealthGate(scripted_probe([True])),
        notifier=FakeNotifier(),
        stop_grace_ms=0,
        lock=RolloutLock(),
        alert=lambda subject, body: False,
    )


@pytest.fixture
def client(monkeypatch, controller):
    # No supervisor thread doing docker work during tests
    monkeypatch.setattr(main, "start_supervisor", lambda: None)
    monkeypatch.setattr(main, "settings", replace(main.settings, api_password=None))
    main.app.dependency_overrides[main.get_controller] = lambda: controller
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def test_health_endpoint(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_deploy_returns_record_and_is_listed(client, previous_container):
    r = client.post("/deployments", json=MANIFEST)

    assert r.status_code == 200
    body = r.json()
    assert body["outcome"] == "healthy"
    assert body["state"] == "completed"
    assert body["previous_container"]["id"] == previous_container.id

    listed = client.get("/rollouts", params={"app": "app"}).json()
    assert [row["id"] for row in listed] == [body["id"]]
    assert client.get(f"/rollouts/{body['id']}").json()["image"] == "app:v2"


def test_invalid_manifest_is_422(client):
    r = client.post("/deployments", json={"image": "app:v2", "ports": ["nope"]})
    assert r.status_code == 422
    assert "host:container" in r.json()["detail"]


def test_concurrent_deploy_is_409(client, controller):
    assert controller.lock.try_acquire()
    try:
        r = client.post("/deployments", json=MANIFEST)
    finally:
        controller.lock.release()

    assert r.status_code == 409
    assert client.get("/rollouts").json() == []


def test_unknown_rollout_is_404(client):
    assert client.get("/rollouts/does-not-exist").status_code == 404


def test_abort_and_current_when_idle(client):
    assert client.get("/rollouts/current").json() is None
    assert client.post("/rollouts/abort").json()["aborted"] is False


def test_events_are_exposed(client):
    client.post("/deployments", json=MANIFEST)
    messages = [e["message"] for e in client.get("/events", params={"limit": 50}).json()]
    assert any("finished healthy" in m for m in messages)


def test_mutations_require_basic_auth_when_password_set(client, monkeypatch):
    monkeypatch.setattr(main, "settings", replace(main.settings, api_user="ops", api_password="s3cret"))

    assert client.post("/deployments", json=MANIFEST).status_code == 401
    assert client.post("/deployments", json=MANIFEST, headers=_basic_auth("ops", "wrong")).status_code == 401
    r = client.post("/deployments", json=MANIFEST, headers=_basic_auth("ops", "s3cret"))
    assert r.status_code == 200
    # Reads stay open
    assert client.get("/rollouts").status_code == 200
