from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable

from .db import log_event
from .docker_ops import ContainerHandle
from .errors import ProxyNotifyFailed
from .settings import settings


@dataclass(frozen=True)
class Upstream:
    public_port: int
    host: str
    port: int


@dataclass(frozen=True)
class ProxyTarget:
    """Where the reverse proxy should send an app's traffic."""

    app: str
    upstreams: tuple[Upstream, ...]

    @classmethod
    def for_container(cls, app: str, handle: ContainerHandle) -> "ProxyTarget":
        return cls(
            app=app,
            upstreams=tuple(Upstream(public_port=e.public_port, host=e.host, port=e.port) for e in handle.endpoints),
        )


@dataclass(frozen=True)
class Ack:
    changed: bool
    detail: str = ""
    # Set when the target was accepted but traffic will not reach it.
    warning: str | None = None


class NullNotifier:
    """Routing is handled outside rollctl. Publishing changes nothing and warns that public ports stay unbound."""

    def publish(self, target: ProxyTarget) -> Ack:
        public = ", ".join(str(u.public_port) for u in target.upstreams)
        direct = ", ".join(f"{u.host}:{u.port}" for u in target.upstreams)
        return Ack(
            changed=False,
            detail="proxy disabled",
            warning=f"ROLLCTL_PROXY=none: public port(s) {public} are not bound; release reachable on {direct} only",
        )


def render_nginx_config(target: ProxyTarget, server_name: str = "_") -> str:
    blocks = [f"# Managed by rollctl for '{target.app}'. Manual edits are overwritten on deploy.\n"]
    for u in target.upstreams:
        upstream = f"rollctl_{target.app.replace('-', '_')}_{u.public_port}"
        blocks.append(
            f"""upstream {upstream} {{
    server {u.host}:{u.port};
}}

server {{
    listen {u.public_port};
    server_name {server_name};

    location / {{
        proxy_pass http://{upstream};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
}}
"""
        )
    return "\n".join(blocks)


class NginxNotifier:
    """Rewrites an app's nginx conf file and reloads nginx.

    Publishing an identical target leaves the file untouched and skips the
    reload. A failing config test or reload restores the previous file.
    """

    def __init__(
        self,
        conf_dir: str | None = None,
        test_cmd: str | None = None,
        reload_cmd: str | None = None,
        server_name: str | None = None,
        timeout_s: int | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.conf_dir = conf_dir or settings.proxy_conf_dir
        self.test_cmd = test_cmd if test_cmd is not None else settings.proxy_test_cmd
        self.reload_cmd = reload_cmd if reload_cmd is not None else settings.proxy_reload_cmd
        self.server_name = server_name or settings.proxy_server_name
        self.timeout_s = timeout_s or settings.proxy_cmd_timeout_s
        self._run = run

    def conf_path(self, app: str) -> str:
        return os.path.join(self.conf_dir, f"{app}.conf")

    def publish(self, target: ProxyTarget) -> Ack:
        path = self.conf_path(target.app)
        content = render_nginx_config(target, self.server_name)

        previous: str | None = None
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as file_obj:
                    previous = file_obj.read()
            except OSError as e:
                raise ProxyNotifyFailed(f"Could not read {path}: {e}") from e
        if previous == content:
            return Ack(changed=False, detail=f"{path} already up to date")

        self._write(path, content)
        try:
            self._command(self.test_cmd)
            self._command(self.reload_cmd)
        except ProxyNotifyFailed:
            self._restore(path, previous)
            raise

        log_event("INFO", f"Proxy now routes to {', '.join(f'{u.host}:{u.port}' for u in target.upstreams) or 'nothing'}", app=target.app)
        return Ack(changed=True, detail=f"wrote {path} and reloaded")

    def _write(self, path: str, content: str) -> None:
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=".rollctl-", suffix=".conf", dir=os.path.dirname(path) or ".")
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as file_obj:
                file_obj.write(content)
            os.replace(temp_path, path)
        except OSError as e:
            raise ProxyNotifyFailed(f"Could not write {path}: {e}") from e

    def _restore(self, path: str, previous: str | None) -> None:
        try:
            if previous is None:
                if os.path.exists(path):
                    os.remove(path)
            else:
                self._write(path, previous)
        except (OSError, ProxyNotifyFailed) as e:
            log_event("ERROR", f"Could not restore {path}: {e}")
            return
        try:
            self._command(self.reload_cmd)
        except ProxyNotifyFailed as e:
            log_event("ERROR", f"Reload after restoring {path} failed: {e}")

    def _command(self, cmd: str) -> None:
        if not cmd:
            return
        argv = shlex.split(cmd)
        try:
            result = self._run(argv, capture_output=True, text=True, timeout=self.timeout_s)
        except FileNotFoundError as e:
            raise ProxyNotifyFailed(f"Command not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ProxyNotifyFailed(f"Command timed out after {self.timeout_s}s: {cmd}") from e
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ProxyNotifyFailed(f"Command failed ({result.returncode}): {cmd}" + (f"\n{stderr}" if stderr else ""))


def build_notifier() -> NginxNotifier | NullNotifier:
    if settings.proxy == "nginx":
        return NginxNotifier()
    return NullNotifier()
