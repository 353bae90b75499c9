from __future__ import annotations

from threading import Event, Thread

from . import db
from .alerts import send_email
from .docker_ops import ContainerDriver, ContainerHandle
from .errors import RolloutError
from .rollouts import RolloutController
from .settings import settings


class Supervisor:
    """Keeps the active container of every app running.

    Stands in for Docker's ``restart: always``: the driver starts containers
    with restart policy "no", so a crashed release is restarted here.
    """

    def __init__(self, controller: RolloutController, driver: ContainerDriver, interval_s: int | None = None):
        self.controller = controller
        self.driver = driver
        self.interval_s = max(1, settings.poll_interval_s if interval_s is None else int(interval_s))
        self._stop = Event()
        self._thr: Thread | None = None
        self.restart_counts: dict[str, int] = {}
        self._reported_missing: set[str] = set()

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="rollctl-supervisor", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Supervisor started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Supervisor tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)

    def tick(self) -> None:
        # A rollout owns the containers while it runs.
        if self.controller.busy():
            return
        for release in db.active_releases():
            if not release.new_container:
                continue
            self._ensure_running(release.app, ContainerHandle.from_dict(release.new_container))

    def _ensure_running(self, app: str, handle: ContainerHandle) -> None:
        try:
            if self.driver.is_running(handle):
                return
            if self.driver.get(handle.id) is None:
                if handle.id not in self._reported_missing:
                    self._reported_missing.add(handle.id)
                    db.log_event("ERROR", f"Active container {handle.name} no longer exists; redeploy required", app=app)
                    send_email(f"MISSING: {app}", f"App: {app}\nContainer: {handle.name}\nThe active container was removed.")
                return
            self.restart_counts[handle.id] = self.restart_counts.get(handle.id, 0) + 1
            db.log_event(
                "WARN",
                f"Restarting stopped container {handle.name} (restart #{self.restart_counts[handle.id]})",
                app=app,
            )
            self.driver.restart(handle)
            send_email(f"RESTARTED: {app}", f"App: {app}\nContainer: {handle.name}\nThe container had stopped and was restarted.")
        except RolloutError as e:
            db.log_event("ERROR", f"Could not supervise {handle.name}: {e}", app=app)
