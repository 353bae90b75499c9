import os
import sys
import threading
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from rollctl import db  # noqa: E402
from rollctl.docker_ops import ContainerHandle, Endpoint  # noqa: E402
from rollctl.proxy import Ack  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    path = tmp_path / "rollctl.db"
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(path)))
    db.init_db()
    return path


class FakeDriver:
    """In-memory stand-in for ContainerDriver."""

    def __init__(self, running=None, pull_error=None, start_error=None):
        self.running = list(running or [])
        self.pull_error = pull_error
        self.start_error = start_error
        self.pull_gate = None
        self.pulling = threading.Event()
        self.pulled = []
        self.started = []
        self.stopped = []
        self.exited = []
        self.restarted = []
        self._n = 0

    def find_running(self, app):
        return list(self.running)

    def pull(self, image):
        self.pulled.append(image)
        self.pulling.set()
        if self.pull_gate is not None:
            self.pull_gate.wait(5)
        if self.pull_error is not None:
            raise self.pull_error
        return "sha256:" + "0" * 12

    def start(self, descriptor):
        if self.start_error is not None:
            raise self.start_error
        self._n += 1
        handle = ContainerHandle(
            id=f"new-{self._n}",
            name=f"{descriptor.container_name}-new{self._n}",
            endpoints=tuple(
                Endpoint(host="127.0.0.1", port=49150 + i, container_port=p.container_port, public_port=p.host_port)
                for i, p in enumerate(descriptor.ports)
            ),
        )
        self.started.append(handle)
        self.running.append(handle)
        return handle

    def stop(self, handle, grace_ms):
        self.stopped.append(handle.id)
        self.running = [h for h in self.running if h.id != handle.id]

    def remove(self, handle):
        self.stopped.append(handle.id)
        self.running = [h for h in self.running if h.id != handle.id]

    def is_running(self, handle):
        return any(h.id == handle.id for h in self.running)

    def get(self, ref):
        for h in self.running + self.exited:
            if ref in (h.id, h.name):
                return h
        return None

    def restart(self, handle):
        self.restarted.append(handle.id)
        self.exited = [h for h in self.exited if h.id != handle.id]
        self.running.append(handle)


class FakeNotifier:
    def __init__(self, error=None):
        self.error = error
        self.published = []

    def publish(self, target):
        self.published.append(target)
        if self.error is not None:
            raise self.error
        return Ack(changed=True, detail="fake")


def scripted_probe(results):
    """Probe answering from ``results`` in order, repeating the last answer."""
    answers = list(results)
    calls = []

    def probe(handle, spec):
        ok = answers[min(len(calls), len(answers) - 1)]
        calls.append(ok)
        return ok, "Healthy" if ok else "HTTP 503", 1.0

    probe.calls = calls
    return probe


@pytest.fixture
def previous_container():
    return ContainerHandle(id="old-1", name="app-old")


@pytest.fixture
def fake_driver(previous_container):
    return FakeDriver(running=[previous_container])


@pytest.fixture
def fake_notifier():
    return FakeNotifier()
