"""Error taxonomy for rollctl.

Leaf components (loader, driver, health gate, proxy notifier) only raise these;
the rollout controller decides whether an error rolls back or surfaces.
"""

from __future__ import annotations


class RolloutError(Exception):
    """Base class for every error rollctl reports."""

    retryable = False


class InvalidManifest(RolloutError):
    """The manifest is missing, unreadable or fails validation."""


class ImageNotFound(RolloutError):
    """The registry answered but does not know the image reference."""


class RegistryUnreachable(RolloutError):
    """The registry could not be reached after bounded retries."""

    retryable = True


class RuntimeUnavailable(RolloutError):
    """The Docker daemon is not reachable."""

    retryable = True


class ContainerStartFailed(RolloutError):
    """Creating or starting the new container failed.

    ``container_id`` is set when a container was created before the failure,
    so the caller can clean it up.
    """

    def __init__(self, message: str, container_id: str | None = None):
        super().__init__(message)
        self.container_id = container_id


class HealthCheckTimeout(RolloutError):
    """The new container did not report healthy before the deadline."""


class RolloutInProgress(RolloutError):
    """Another rollout holds the lock. Nothing was changed."""

    retryable = True


class ProxyNotifyFailed(RolloutError):
    """The reverse proxy rejected or failed to apply the new upstream."""
