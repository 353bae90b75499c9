from __future__ import annotations

import math
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils import parse_repository_tag
from requests.exceptions import RequestException

from .db import log_event
from .errors import ContainerStartFailed, ImageNotFound, RegistryUnreachable, RolloutError, RuntimeUnavailable
from .manifest import ReleaseDescriptor
from .settings import settings


APP_LABEL = "rollctl.app"
IMAGE_LABEL = "rollctl.image"


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int
    container_port: int
    public_port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{int(self.port)}"


@dataclass(frozen=True)
class ContainerHandle:
    id: str
    name: str
    endpoints: tuple[Endpoint, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "endpoints": [
                {"host": e.host, "port": e.port, "container_port": e.container_port, "public_port": e.public_port}
                for e in self.endpoints
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContainerHandle":
        return cls(
            id=data["id"],
            name=data["name"],
            endpoints=tuple(Endpoint(**e) for e in data.get("endpoints", [])),
        )


class ContainerDriver:
    """Pull/start/stop/remove containers through the Docker Engine API.

    The driver only reports failures; deciding whether to retry the rollout
    or roll back belongs to the controller.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        environ: Mapping[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        supervised: bool = True,
    ):
        self._client_obj = client
        # Without a rollctl supervisor, Docker restarts crashed releases itself.
        self.restart_policy = {"Name": "no"} if supervised else {"Name": "unless-stopped"}
        self.environ = os.environ if environ is None else environ
        self._sleep = sleep

    @property
    def client(self) -> docker.DockerClient:
        if self._client_obj is None:
            try:
                self._client_obj = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailable(
                    f"Docker is not available ({e}). Start the docker daemon and try again."
                ) from e
        return self._client_obj

    def docker_available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (DockerException, RuntimeUnavailable, RequestException):
            return False

    def ensure_network(self) -> None:
        if not settings.docker_network:
            return
        try:
            self.client.networks.get(settings.docker_network)
        except NotFound:
            self.client.networks.create(settings.docker_network, driver="bridge")
            log_event("INFO", f"Created docker network '{settings.docker_network}'.")

    # -- pull --------------------------------------------------------------

    def pull(self, image_reference: str) -> str:
        """Pull an image and return its id.

        Retries transient registry/daemon errors ``settings.pull_retries`` times,
        waiting ``pull_backoff_s * 2**n`` seconds between attempts.
        """
        if settings.pull_policy == "if-not-present":
            try:
                return self.client.images.get(image_reference).id
            except NotFound:
                pass
            except (DockerException, RequestException) as e:
                raise RuntimeUnavailable(f"Could not inspect image {image_reference}: {e}") from e

        repository, tag = parse_repository_tag(image_reference)
        attempts = max(0, settings.pull_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                image = self.client.images.pull(repository, tag=tag or "latest")
                return image.id
            except NotFound as e:
                raise ImageNotFound(f"Image not found: {image_reference} ({e.explanation or e})") from e
            except (DockerException, RequestException) as e:
                if attempt >= attempts:
                    raise RegistryUnreachable(
                        f"Could not pull {image_reference} after {attempts} attempts: {e}"
                    ) from e
                delay = settings.pull_backoff_s * (2 ** (attempt - 1))
                log_event("WARN", f"Pull of {image_reference} failed on attempt {attempt}/{attempts}; retrying in {delay:.1f}s ({e})")
                self._sleep(delay)
        raise RegistryUnreachable(f"Could not pull {image_reference}")

    # -- start -------------------------------------------------------------

    def _resolve_env(self, env_refs: frozenset[str]) -> dict[str, str]:
        missing = sorted(name for name in env_refs if name not in self.environ)
        if missing:
            raise ContainerStartFailed(f"Environment variable(s) not set: {', '.join(missing)}")
        return {name: self.environ[name] for name in sorted(env_refs)}

    def start(self, descriptor: ReleaseDescriptor) -> ContainerHandle:
        """Create and start a new container for the release.

        The container gets a unique name so it can run next to the previous
        release. Containers are labeled so we can re-discover them after restarts.
        """
        env = self._resolve_env(descriptor.env_refs)

        name = f"{descriptor.container_name}-{secrets.token_hex(3)}"
        labels = {APP_LABEL: descriptor.container_name, IMAGE_LABEL: descriptor.image}
        network_mode = settings.upstream_mode == "network"
        # Ephemeral host ports; the reverse proxy owns the public ports.
        ports = {} if network_mode else {f"{p.container_port}/tcp": None for p in descriptor.ports}

        try:
            self.ensure_network()
            container = self.client.containers.create(
                descriptor.image,
                detach=True,
                name=name,
                environment=env,
                labels=labels,
                ports=ports,
                network=settings.docker_network or None,
                restart_policy=self.restart_policy,
            )
        except (DockerException, RequestException, RuntimeUnavailable) as e:
            raise ContainerStartFailed(f"Could not create container {name}: {e}") from e

        try:
            container.start()
            container.reload()
            handle = ContainerHandle(id=container.id, name=name, endpoints=self._endpoints(container, descriptor))
        except (DockerException, RequestException, KeyError, IndexError, TypeError, ValueError) as e:
            raise ContainerStartFailed(f"Could not start container {name}: {e}", container_id=container.id) from e

        log_event("INFO", f"Started container {name} from image {descriptor.image}", app=descriptor.container_name)
        return handle

    def _endpoints(self, container: Any, descriptor: ReleaseDescriptor) -> tuple[Endpoint, ...]:
        if settings.upstream_mode == "network":
            return tuple(
                Endpoint(host=container.name, port=p.container_port, container_port=p.container_port, public_port=p.host_port)
                for p in descriptor.ports
            )

        published = container.attrs["NetworkSettings"]["Ports"]
        out: list[Endpoint] = []
        for p in descriptor.ports:
            bindings = published.get(f"{p.container_port}/tcp") or []
            if not bindings:
                raise ValueError(f"container port {p.container_port} was not published")
            out.append(
                Endpoint(
                    host=settings.upstream_host,
                    port=int(bindings[0]["HostPort"]),
                    container_port=p.container_port,
                    public_port=p.host_port,
                )
            )
        return tuple(out)

    # -- stop / remove -----------------------------------------------------

    def stop(self, handle: ContainerHandle, grace_ms: int) -> None:
        """SIGTERM, wait up to ``grace_ms`` for exit, then force removal."""
        try:
            cont = self.client.containers.get(handle.id)
        except NotFound:
            return
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not inspect container {handle.name}: {e}") from e
        try:
            cont.stop(timeout=max(0, math.ceil(grace_ms / 1000.0)))
        except NotFound:
            return
        except (APIError, RequestException) as e:
            log_event("WARN", f"Graceful stop of {handle.name} failed, forcing removal: {e}")
        self.remove(handle)

    def remove(self, handle: ContainerHandle) -> None:
        try:
            self.client.containers.get(handle.id).remove(force=True)
        except NotFound:
            return
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not remove container {handle.name}: {e}") from e

    # -- inspection --------------------------------------------------------

    def get(self, container_id: str) -> ContainerHandle | None:
        try:
            cont = self.client.containers.get(container_id)
        except NotFound:
            return None
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not inspect container {container_id}: {e}") from e
        return ContainerHandle(id=cont.id, name=cont.name)

    def find_running(self, app: str) -> list[ContainerHandle]:
        """Running containers of an app, newest first."""
        try:
            containers = self.client.containers.list(filters={"label": [f"{APP_LABEL}={app}"], "status": "running"})
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not list containers of {app}: {e}") from e
        return [ContainerHandle(id=x.id, name=x.name) for x in containers]

    def is_running(self, handle: ContainerHandle) -> bool:
        try:
            cont = self.client.containers.get(handle.id)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not inspect container {handle.name}: {e}") from e

    def restart(self, handle: ContainerHandle) -> None:
        try:
            self.client.containers.get(handle.id).restart()
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not restart container {handle.name}: {e}") from e

    def logs(self, container: ContainerHandle | str, follow: bool = False, tail: int | str = "all") -> Iterator[str]:
        """Stream decoded log lines of a container (handle, id or name)."""
        ref = container.id if isinstance(container, ContainerHandle) else container
        try:
            cont = self.client.containers.get(ref)
        except NotFound as e:
            raise RolloutError(f"No such container: {ref}") from e
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Could not inspect container {ref}: {e}") from e
        buf = ""
        for chunk in cont.logs(stream=True, follow=follow, tail=tail):
            buf += chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else str(chunk)
            while "\n" in buf:
                line, buf = buf.split("\n", 1)
                yield line
        if buf:
            yield buf
