import json
import threading

import pytest
import requests

import cli
from rollctl.errors import ProxyNotifyFailed
from rollctl.health import HealthGate
from rollctl.proxy import NullNotifier
from rollctl.rollouts import RolloutController, RolloutLock

from conftest import FakeDriver, FakeNotifier, scripted_probe


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "release.yml"
    path.write_text(
        "image: app:v2\n"
        "ports: ['8080:80']\n"
        "health: {path: /health, interval_ms: 10, timeout_ms: 100, retries: 1}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def use_controller(monkeypatch, previous_container):
    def install(probe_results, notifier=None):
        controller = RolloutController(
            driver=FakeDriver(running=[previous_container]),
            gate=HealthGate(scripted_probe(probe_results)),
            notifier=notifier or FakeNotifier(),
            stop_grace_ms=0,
            lock=RolloutLock(),
            alert=lambda subject, body: False,
        )

        def build(**kwargs):
            controller.build_kwargs = kwargs
            return controller

        monkeypatch.setattr(cli, "build_controller", build)
        return controller

    return install


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


def test_local_deploy_healthy_exits_zero(manifest, use_controller, capsys):
    use_controller([True])

    assert cli.main(["deploy", manifest]) == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["outcome"] == "healthy"


def test_local_deploy_lets_docker_restart_the_release(manifest, use_controller):
    # A one-shot CLI run starts no supervisor thread.
    controller = use_controller([True])

    assert cli.main(["deploy", manifest]) == cli.EXIT_OK
    assert controller.build_kwargs == {"supervised": False}
    assert not any(t.name == "rollctl-supervisor" for t in threading.enumerate())


def test_local_deploy_rolled_back_exits_three(manifest, use_controller):
    use_controller([False])

    assert cli.main(["deploy", manifest]) == cli.EXIT_ROLLED_BACK


def test_local_deploy_in_progress_exits_four(manifest, use_controller, capsys):
    controller = use_controller([True])
    assert controller.lock.try_acquire()
    try:
        code = cli.main(["deploy", manifest])
    finally:
        controller.lock.release()

    assert code == cli.EXIT_IN_PROGRESS
    assert "in progress" in capsys.readouterr().err


def test_invalid_manifest_exits_one(tmp_path, capsys):
    path = tmp_path / "bad.yml"
    path.write_text("image: app:v2\nports: [8080:80]\n", encoding="utf-8")

    assert cli.main(["deploy", str(path)]) == cli.EXIT_FAILED
    assert "quoted" in capsys.readouterr().err


def test_proxy_failure_warns_but_exits_zero(manifest, use_controller, capsys):
    use_controller([True], notifier=FakeNotifier(error=ProxyNotifyFailed("nginx -t failed")))

    assert cli.main(["deploy", manifest]) == cli.EXIT_OK
    assert "proxy was not updated" in capsys.readouterr().err


def test_history_lists_local_records(manifest, use_controller, capsys):
    use_controller([True])
    cli.main(["deploy", manifest])
    capsys.readouterr()

    assert cli.main(["history", "--app", "app"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert len(rows) == 1
    assert rows[0]["image"] == "app:v2"


def test_remote_deploy_maps_outcome_and_conflict(manifest, monkeypatch):
    calls = []
    responses = [
        FakeResponse(200, {"outcome": "rolled-back", "proxy_error": None}),
        FakeResponse(409, {"detail": "Another rollout is in progress"}),
    ]

    def fake_post(url, json=None, auth=None, timeout=None):
        calls.append((url, json, auth))
        return responses.pop(0)

    monkeypatch.setattr(cli.requests, "post", fake_post)

    args = ["--api", "http://ctl:8000/", "--password", "pw", "deploy", manifest]
    assert cli.main(args) == cli.EXIT_ROLLED_BACK
    assert cli.main(args) == cli.EXIT_IN_PROGRESS

    url, body, auth = calls[0]
    assert url == "http://ctl:8000/deployments"
    assert body["image"] == "app:v2"
    assert body["ports"] == ["8080:80"]
    assert auth == ("admin", "pw")


def test_remote_unreachable_exits_one(manifest, monkeypatch):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(cli.requests, "post", refuse)

    assert cli.main(["--api", "http://ctl:8000", "deploy", manifest]) == cli.EXIT_FAILED


def test_abort_requires_api():
    assert cli.main(["abort"]) == 2


def test_deploy_without_proxy_warns_public_ports_unbound(manifest, use_controller, capsys):
    use_controller([True], notifier=NullNotifier())

    assert cli.main(["deploy", manifest]) == cli.EXIT_OK
    assert "8080 are not bound" in capsys.readouterr().err
