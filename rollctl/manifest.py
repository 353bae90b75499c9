"""Release manifest loading and validation.

A manifest is a YAML (or JSON) mapping:

    image: registry.example.com/app:v2
    name: app                   # optional, derived from the image otherwise
    ports: ["8080:80"]          # host:container, or {host: 8080, container: 80}
    env: [DATABASE_URL]         # variable names resolved at deploy time
    health: {path: /health, interval_ms: 1000, timeout_ms: 30000, retries: 1}

Port mappings also accept hostPort/containerPort keys, and health timings
intervalMs/timeoutMs. Integers must be real integers (YAML booleans are rejected).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator, model_validator

from .errors import InvalidManifest


CONTAINER_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_container_name(name: str) -> None:
    if not CONTAINER_NAME_RE.match(name):
        raise ValueError(
            "Invalid container name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so the health gate only ever talks to the container.
    if not path.startswith("/"):
        raise ValueError("health path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health path must be a simple absolute path (no scheme, no '..').")


def default_container_name(image: str) -> str:
    """Derive a container name from an image reference.

    ``registry:5000/team/web-app:v2`` -> ``web-app``.
    """
    ref = image.split("@", 1)[0]
    last = ref.rsplit("/", 1)[-1]
    repo = last.split(":", 1)[0]
    name = re.sub(r"[^a-z0-9\-]+", "-", repo.lower()).strip("-")
    if not name or not name[0].isalpha():
        name = f"app-{name}" if name else "app"
    return name[:63]


class PortModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: StrictInt = Field(
        ...,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("host", "hostPort"),
        description="Public port the reverse proxy listens on",
    )
    container: StrictInt = Field(
        ...,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("container", "containerPort"),
        description="Port the service listens on inside the container",
    )


class HealthModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field("/health", description="Health endpoint path")
    interval_ms: StrictInt = Field(1000, ge=1, le=3_600_000, validation_alias=AliasChoices("interval_ms", "intervalMs"))
    timeout_ms: StrictInt = Field(30000, ge=1, le=86_400_000, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))
    retries: StrictInt = Field(1, ge=1, le=100, description="Consecutive successes required")

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        validate_health_path(v)
        return v

    @model_validator(mode="after")
    def _check_timeout(self) -> "HealthModel":
        if self.timeout_ms < self.interval_ms:
            raise ValueError("timeout_ms must be greater than or equal to interval_ms")
        return self


class ManifestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str = Field(..., min_length=1, description="Docker image (name:tag)")
    name: str | None = Field(None, description="Logical container name (dns-safe)")
    ports: list[PortModel] = Field(default_factory=list)
    env: list[str] = Field(default_factory=list, description="Environment variable names to pass through")
    health: HealthModel = Field(default_factory=HealthModel)

    @field_validator("image")
    @classmethod
    def _check_image(cls, v: str) -> str:
        v = v.strip()
        if not v or any(c.isspace() for c in v):
            raise ValueError("image must be a non-empty reference without whitespace")
        return v

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str | None) -> str | None:
        if v is not None:
            validate_container_name(v)
        return v

    @field_validator("ports", mode="before")
    @classmethod
    def _parse_ports(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return v
        return [_parse_port(item) for item in v]

    @field_validator("env")
    @classmethod
    def _check_env(cls, v: list[str]) -> list[str]:
        bad = [name for name in v if not ENV_NAME_RE.match(name)]
        if bad:
            raise ValueError(f"invalid environment variable name(s): {', '.join(bad)}")
        return v

    @model_validator(mode="after")
    def _check_unique_host_ports(self) -> "ManifestModel":
        seen: set[int] = set()
        for p in self.ports:
            if p.host in seen:
                raise ValueError(f"host port {p.host} is bound more than once")
            seen.add(p.host)
        return self


def _parse_port(item: Any) -> Any:
    # PyYAML reads an unquoted 8080:80 as a base-60 integer.
    if isinstance(item, bool) or isinstance(item, int):
        raise ValueError('port mappings must be quoted strings like "8080:80" or {host: 8080, container: 80}')
    if isinstance(item, str):
        parts = item.strip().split(":")
        if len(parts) != 2:
            raise ValueError(f"port mapping {item!r} must look like 'host:container'")
        try:
            return {"host": int(parts[0]), "container": int(parts[1])}
        except ValueError:
            raise ValueError(f"port mapping {item!r} must contain integers") from None
    return item


@dataclass(frozen=True)
class PortBinding:
    host_port: int
    container_port: int


@dataclass(frozen=True)
class HealthCheckSpec:
    path: str = "/health"
    interval_ms: int = 1000
    timeout_ms: int = 30000
    retries: int = 1


@dataclass(frozen=True)
class ReleaseDescriptor:
    image: str
    container_name: str
    ports: tuple[PortBinding, ...] = ()
    env_refs: frozenset[str] = frozenset()
    health: HealthCheckSpec = field(default_factory=HealthCheckSpec)

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "name": self.container_name,
            "ports": [f"{p.host_port}:{p.container_port}" for p in self.ports],
            "env": sorted(self.env_refs),
            "health": {
                "path": self.health.path,
                "interval_ms": self.health.interval_ms,
                "timeout_ms": self.health.timeout_ms,
                "retries": self.health.retries,
            },
        }


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "manifest"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_manifest(data: Any, source: str = "<manifest>") -> ReleaseDescriptor:
    """Validate an in-memory manifest mapping into a ReleaseDescriptor."""
    if not isinstance(data, dict):
        raise InvalidManifest(f"{source}: manifest must contain a mapping at the root.")
    try:
        model = ManifestModel.model_validate(data)
    except ValidationError as exc:
        raise InvalidManifest(f"{source}: {_format_errors(exc)}") from exc

    return ReleaseDescriptor(
        image=model.image,
        container_name=model.name or default_container_name(model.image),
        ports=tuple(PortBinding(host_port=p.host, container_port=p.container) for p in model.ports),
        env_refs=frozenset(model.env),
        health=HealthCheckSpec(
            path=model.health.path,
            interval_ms=model.health.interval_ms,
            timeout_ms=model.health.timeout_ms,
            retries=model.health.retries,
        ),
    )


def load_manifest(path: str | Path) -> ReleaseDescriptor:
    p = Path(path)
    if not p.is_file():
        raise InvalidManifest(f"Manifest not found: {path}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError, UnicodeDecodeError) as exc:
        raise InvalidManifest(f"Invalid manifest file '{path}': {exc}") from exc
    if data is None:
        raise InvalidManifest(f"Manifest file '{path}' is empty.")
    return parse_manifest(data, source=str(path))


def dump_manifest(descriptor: ReleaseDescriptor) -> str:
    return yaml.safe_dump(descriptor.to_dict(), sort_keys=False)
