from __future__ import annotations

import enum
import fcntl
import secrets
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import IO, Any, Callable

from . import db
from .alerts import send_email
from .db import utc_now
from .docker_ops import ContainerDriver, ContainerHandle
from .errors import ContainerStartFailed, HealthCheckTimeout, ProxyNotifyFailed, RolloutError, RolloutInProgress
from .health import ContainerProbe, HealthGate, HealthOutcome
from .manifest import ReleaseDescriptor
from .proxy import NginxNotifier, NullNotifier, ProxyTarget, build_notifier
from .settings import settings


class RolloutState(str, enum.Enum):
    IDLE = "idle"
    PULLING = "pulling"
    STARTING = "starting"
    HEALTH_CHECKING = "health-checking"
    SWAPPING = "swapping"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


class Outcome(str, enum.Enum):
    PENDING = "pending"
    HEALTHY = "healthy"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


@dataclass
class RolloutRecord:
    id: str
    descriptor: ReleaseDescriptor
    started_at: str = field(default_factory=utc_now)
    state: RolloutState = RolloutState.IDLE
    outcome: Outcome = Outcome.PENDING
    previous_container: ContainerHandle | None = None
    new_container: ContainerHandle | None = None
    error: str | None = None
    proxy_error: str | None = None
    finished_at: str | None = None
    transitions: list[RolloutState] = field(default_factory=list)

    @property
    def app(self) -> str:
        return self.descriptor.container_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "app": self.app,
            "image": self.descriptor.image,
            "descriptor": self.descriptor.to_dict(),
            "state": self.state.value,
            "outcome": self.outcome.value,
            "previous_container": self.previous_container.to_dict() if self.previous_container else None,
            "new_container": self.new_container.to_dict() if self.new_container else None,
            "error": self.error,
            "proxy_error": self.proxy_error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class RolloutLock:
    """Non-blocking mutual exclusion for rollouts.

    An in-process lock, plus an advisory flock on ``path`` (when given) so
    two CLI processes on the same host exclude each other too.
    """

    def __init__(self, path: str | None = None):
        self.path = path
        self._lock = Lock()
        self._fh: IO[str] | None = None

    def try_acquire(self) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        if not self.path:
            return True
        try:
            fh = open(self.path, "a+", encoding="utf-8")
        except OSError:
            self._lock.release()
            raise
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            self._lock.release()
            return False
        self._fh = fh
        return True

    def release(self) -> None:
        if self._fh is not None:
            try:
                fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
            finally:
                self._fh.close()
                self._fh = None
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class RolloutController:
    """Runs one rollout at a time: pull -> start -> health-check -> swap -> stop old.

    Any failure before the swap leaves the previous container untouched; a
    failed health check stops and removes the new container instead.
    """

    def __init__(
        self,
        driver: ContainerDriver,
        gate: HealthGate,
        notifier: NginxNotifier | NullNotifier,
        stop_grace_ms: int | None = None,
        lock: RolloutLock | None = None,
        alert: Callable[[str, str], bool] = send_email,
    ):
        self.driver = driver
        self.gate = gate
        self.notifier = notifier
        self.stop_grace_ms = settings.stop_grace_ms if stop_grace_ms is None else stop_grace_ms
        self.lock = lock or RolloutLock()
        self.alert = alert
        self._cancel = Event()
        self._current: RolloutRecord | None = None

    def deploy(self, descriptor: ReleaseDescriptor) -> RolloutRecord:
        """Roll out a release. Raises RolloutInProgress without side effects when busy."""
        if not self.lock.try_acquire():
            raise RolloutInProgress("Another rollout is in progress; retry when it has finished.")
        try:
            stale = db.fail_pending_rollouts("Interrupted: the controller stopped before the rollout finished")
            if stale:
                db.log_event("WARN", f"Marked {stale} interrupted rollout(s) as failed")

            self._cancel = Event()
            record = RolloutRecord(id=secrets.token_hex(6), descriptor=descriptor)
            self._current = record
            self._save(record)
            db.log_event("INFO", f"Rollout {record.id} of {descriptor.image} requested", app=record.app, rollout_id=record.id)
            try:
                self._run(record)
            except Exception as e:
                # Unexpected error: never leave the record pending or the new container running.
                if record.new_container is not None and record.outcome is Outcome.PENDING:
                    self._stop_quietly(record, record.new_container)
                if record.outcome is Outcome.PENDING:
                    self._fail(record, f"{type(e).__name__}: {e}")
                raise
            return record
        finally:
            self._current = None
            self.lock.release()

    def abort(self) -> bool:
        """Request a rollback of the in-flight rollout. Returns False when idle."""
        record = self._current
        if record is None:
            return False
        self._cancel.set()
        db.log_event("WARN", f"Rollback requested for rollout {record.id}", app=record.app, rollout_id=record.id)
        return True

    def current(self) -> RolloutRecord | None:
        return self._current

    def busy(self) -> bool:
        return self.lock.locked()

    # -- pipeline ----------------------------------------------------------

    def _run(self, record: RolloutRecord) -> None:
        descriptor = record.descriptor

        try:
            running = self.driver.find_running(record.app)
        except RolloutError as e:
            self._fail(record, _describe(e))
            return
        record.previous_container = running[0] if running else None

        self._transition(record, RolloutState.PULLING)
        try:
            self.driver.pull(descriptor.image)
        except RolloutError as e:
            self._fail(record, _describe(e))
            return

        self._transition(record, RolloutState.STARTING)
        try:
            handle = self.driver.start(descriptor)
        except ContainerStartFailed as e:
            if e.container_id:
                self._stop_quietly(record, ContainerHandle(id=e.container_id, name=e.container_id))
            self._fail(record, _describe(e))
            return
        except RolloutError as e:
            self._fail(record, _describe(e))
            return
        record.new_container = handle

        self._transition(record, RolloutState.HEALTH_CHECKING)
        verdict = self.gate.await_healthy(handle, descriptor.health, cancel=self._cancel)
        if verdict.outcome is HealthOutcome.CANCELLED:
            self._roll_back(record, handle, f"Aborted: rollback requested during health check after {verdict.polls} poll(s)")
            return
        if verdict.outcome is HealthOutcome.TIMEOUT:
            err = HealthCheckTimeout(
                f"{handle.name} not healthy after {verdict.elapsed_ms:.0f}ms ({verdict.polls} polls, last: {verdict.message})"
            )
            self._roll_back(record, handle, _describe(err))
            return

        self._transition(record, RolloutState.SWAPPING)
        if handle.endpoints:
            try:
                ack = self.notifier.publish(ProxyTarget.for_container(record.app, handle))
                db.log_event("INFO", f"Proxy notified ({ack.detail})", app=record.app, rollout_id=record.id)
                if ack.warning:
                    record.proxy_error = ack.warning
                    db.log_event("WARN", ack.warning, app=record.app, rollout_id=record.id)
            except ProxyNotifyFailed as e:
                # Routing and container lifecycle fail independently; keep the swap.
                record.proxy_error = str(e)
                db.log_event("ERROR", f"Proxy update failed: {e}", app=record.app, rollout_id=record.id)

        for old in running:
            if old.id != handle.id:
                self._stop_quietly(record, old)

        self._finish(record, RolloutState.COMPLETED, Outcome.HEALTHY)

    def _roll_back(self, record: RolloutRecord, handle: ContainerHandle, error: str) -> None:
        record.error = error
        self._transition(record, RolloutState.ROLLING_BACK)
        self._stop_quietly(record, handle)
        self._finish(record, RolloutState.ROLLED_BACK, Outcome.ROLLED_BACK)

    def _fail(self, record: RolloutRecord, error: str) -> None:
        record.error = error
        self._finish(record, RolloutState.FAILED, Outcome.FAILED)

    # -- bookkeeping -------------------------------------------------------

    def _stop_quietly(self, record: RolloutRecord, handle: ContainerHandle) -> None:
        try:
            self.driver.stop(handle, self.stop_grace_ms)
        except RolloutError as e:
            db.log_event("ERROR", f"Could not stop {handle.name}: {e}", app=record.app, rollout_id=record.id)

    def _transition(self, record: RolloutRecord, state: RolloutState) -> None:
        record.state = state
        record.transitions.append(state)
        self._save(record)
        db.log_event("INFO", f"Rollout {record.id}: {state.value}", app=record.app, rollout_id=record.id)

    def _finish(self, record: RolloutRecord, state: RolloutState, outcome: Outcome) -> None:
        record.state = state
        record.transitions.append(state)
        record.outcome = outcome
        record.finished_at = utc_now()
        self._save(record)

        level = "INFO" if outcome is Outcome.HEALTHY else "ERROR"
        detail = f": {record.error}" if record.error else ""
        db.log_event(level, f"Rollout {record.id} finished {outcome.value}{detail}", app=record.app, rollout_id=record.id)
        if outcome is not Outcome.HEALTHY:
            self._maybe_alert(record)

    def _maybe_alert(self, record: RolloutRecord) -> None:
        subject = f"{'ROLLED BACK' if record.outcome is Outcome.ROLLED_BACK else 'FAILED'}: {record.app} {record.descriptor.image}"
        previous = record.previous_container.name if record.previous_container else "none"
        body = (
            f"App: {record.app}\nImage: {record.descriptor.image}\nRollout: {record.id}\n"
            f"Outcome: {record.outcome.value}\nPrevious container: {previous}\nDetail: {record.error}"
        )
        self.alert(subject, body)

    def _save(self, record: RolloutRecord) -> None:
        d = record.to_dict()
        db.save_rollout(
            rollout_id=d["id"],
            app=d["app"],
            image=d["image"],
            descriptor=d["descriptor"],
            state=d["state"],
            outcome=d["outcome"],
            previous_container=d["previous_container"],
            new_container=d["new_container"],
            error=d["error"],
            proxy_error=d["proxy_error"],
            started_at=d["started_at"],
            finished_at=d["finished_at"],
        )


def _describe(e: Exception) -> str:
    return f"{type(e).__name__}: {e}"


def build_controller(supervised: bool = True) -> RolloutController:
    """Wire a controller from settings: Docker driver, HTTP health gate, configured proxy.

    Pass ``supervised=False`` when no Supervisor thread will watch the
    containers; Docker then restarts them (``unless-stopped``).
    """
    driver = ContainerDriver(supervised=supervised)
    return RolloutController(
        driver=driver,
        gate=HealthGate(ContainerProbe(driver)),
        notifier=build_notifier(),
        lock=RolloutLock(settings.lock_path),
    )
