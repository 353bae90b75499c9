from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .docker_ops import ContainerDriver, ContainerHandle
from .manifest import HealthCheckSpec
from .settings import settings


HEALTHY_STATUSES = {"healthy", "ok", "up", "pass"}


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx is healthy, unless the body is a JSON object whose "status" is not
    one of healthy/ok/up/pass.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data:
            if str(data["status"]).lower() in HEALTHY_STATUSES:
                return True, "Healthy", latency_ms
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class ContainerProbe:
    """One health observation of a container.

    Uses the HTTP health path on the first endpoint; releases without ports
    fall back to "the container process is running".
    """

    def __init__(self, driver: ContainerDriver, timeout_s: float | None = None):
        self.driver = driver
        self.timeout_s = settings.health_request_timeout_s if timeout_s is None else timeout_s

    def __call__(self, handle: ContainerHandle, spec: HealthCheckSpec) -> tuple[bool, str, float | None]:
        if not handle.endpoints:
            running = self.driver.is_running(handle)
            return running, "Running" if running else "Not running", None
        url = f"{handle.endpoints[0].base_url}{spec.path}"
        return check_health(url, timeout_s=self.timeout_s)


class HealthOutcome(str, enum.Enum):
    HEALTHY = "healthy"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HealthVerdict:
    outcome: HealthOutcome
    polls: int
    elapsed_ms: float
    message: str

    @property
    def healthy(self) -> bool:
        return self.outcome is HealthOutcome.HEALTHY


class HealthGate:
    """Polls a container until it is consistently healthy or the deadline passes."""

    def __init__(
        self,
        probe: Callable[[ContainerHandle, HealthCheckSpec], tuple[bool, str, float | None]],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.probe = probe
        self.clock = clock

    def await_healthy(
        self,
        handle: ContainerHandle,
        spec: HealthCheckSpec,
        cancel: threading.Event | None = None,
    ) -> HealthVerdict:
        cancel = cancel or threading.Event()
        interval_s = spec.interval_ms / 1000.0
        start = self.clock()
        deadline = start + spec.timeout_ms / 1000.0
        consecutive = 0
        polls = 0
        msg = "not polled"

        def verdict(outcome: HealthOutcome) -> HealthVerdict:
            return HealthVerdict(outcome, polls, round((self.clock() - start) * 1000.0, 2), msg)

        while True:
            if cancel.is_set():
                msg = "Cancelled"
                return verdict(HealthOutcome.CANCELLED)

            ok, msg, _latency = self.probe(handle, spec)
            polls += 1
            # A failure resets the streak, never the deadline.
            consecutive = consecutive + 1 if ok else 0
            if consecutive >= spec.retries:
                return verdict(HealthOutcome.HEALTHY)

            remaining = deadline - self.clock()
            if remaining <= 0:
                return verdict(HealthOutcome.TIMEOUT)
            if cancel.wait(min(interval_s, remaining)):
                msg = "Cancelled"
                return verdict(HealthOutcome.CANCELLED)
