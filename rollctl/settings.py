from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("ROLLCTL_DB_PATH", "rollctl.db")
    lock_path: str = os.getenv("ROLLCTL_LOCK_PATH", "rollctl.lock")
    poll_interval_s: int = _env_int("ROLLCTL_POLL_INTERVAL_S", 5)
    supervise: bool = _env_bool("ROLLCTL_SUPERVISE", True)

    # Docker
    docker_network: str = os.getenv("ROLLCTL_DOCKER_NETWORK", "")
    # host: publish container ports on ephemeral host ports and route to upstream_host.
    # network: route to <container-name>:<container-port> on docker_network.
    upstream_mode: str = os.getenv("ROLLCTL_UPSTREAM_MODE", "host")
    upstream_host: str = os.getenv("ROLLCTL_UPSTREAM_HOST", "127.0.0.1")
    pull_policy: str = os.getenv("ROLLCTL_PULL_POLICY", "always")  # always|if-not-present
    pull_retries: int = _env_int("ROLLCTL_PULL_RETRIES", 3)
    pull_backoff_s: float = _env_float("ROLLCTL_PULL_BACKOFF_S", 2.0)
    stop_grace_ms: int = _env_int("ROLLCTL_STOP_GRACE_MS", 10000)
    health_request_timeout_s: float = _env_float("ROLLCTL_HEALTH_REQUEST_TIMEOUT_S", 2.0)

    # Reverse proxy
    proxy: str = os.getenv("ROLLCTL_PROXY", "none")  # nginx|none
    proxy_conf_dir: str = os.getenv("ROLLCTL_PROXY_CONF_DIR", "/etc/nginx/conf.d")
    proxy_server_name: str = os.getenv("ROLLCTL_PROXY_SERVER_NAME", "_")
    proxy_test_cmd: str = os.getenv("ROLLCTL_PROXY_TEST_CMD", "nginx -t")
    proxy_reload_cmd: str = os.getenv("ROLLCTL_PROXY_RELOAD_CMD", "nginx -s reload")
    proxy_cmd_timeout_s: int = _env_int("ROLLCTL_PROXY_CMD_TIMEOUT_S", 10)

    # Control API
    api_user: str = os.getenv("ROLLCTL_API_USER", "admin")
    api_password: str | None = os.getenv("ROLLCTL_API_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("ROLLCTL_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("ROLLCTL_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("ROLLCTL_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("ROLLCTL_SMTP_USER")
    smtp_password: str | None = os.getenv("ROLLCTL_SMTP_PASSWORD")
    email_from: str | None = os.getenv("ROLLCTL_EMAIL_FROM")
    email_to: str | None = os.getenv("ROLLCTL_EMAIL_TO")


settings = Settings()
