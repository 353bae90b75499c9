from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from threading import Thread
from typing import Any

import requests

from rollctl import db
from rollctl.docker_ops import ContainerDriver
from rollctl.errors import InvalidManifest, RolloutError, RolloutInProgress
from rollctl.manifest import load_manifest
from rollctl.rollouts import build_controller


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLED_BACK = 3
EXIT_IN_PROGRESS = 4

OUTCOME_EXIT_CODES = {
    "healthy": EXIT_OK,
    "failed": EXIT_FAILED,
    "rolled-back": EXIT_ROLLED_BACK,
}


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _err(msg: str) -> None:
    print(msg, file=sys.stderr)


def _exit_code(result: dict[str, Any]) -> int:
    if result.get("proxy_error"):
        _err(f"warning: container swapped but the proxy was not updated: {result['proxy_error']}")
    return OUTCOME_EXIT_CODES.get(result.get("outcome", ""), EXIT_FAILED)


def _deploy_local(manifest_path: str) -> int:
    try:
        descriptor = load_manifest(manifest_path)
    except InvalidManifest as e:
        _err(f"error: {e}")
        return EXIT_FAILED

    db.init_db()
    # No Supervisor thread in a one-shot CLI run.
    controller = build_controller(supervised=False)
    outcome: dict[str, Any] = {}

    def _run() -> None:
        try:
            outcome["record"] = controller.deploy(descriptor)
        except Exception as e:
            outcome["error"] = e

    # Deploy on a worker thread so Ctrl-C can request a rollback instead of killing us mid-swap.
    worker = Thread(target=_run, name="rollctl-deploy", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            if controller.abort():
                _err("Rollback requested; waiting for the rollout to unwind...")

    error = outcome.get("error")
    if isinstance(error, RolloutInProgress):
        _err(f"error: {error}")
        return EXIT_IN_PROGRESS
    if error is not None:
        raise error

    result = outcome["record"].to_dict()
    _print(result)
    return _exit_code(result)


def _deploy_remote(base: str, auth: tuple[str, str] | None, manifest_path: str) -> int:
    try:
        descriptor = load_manifest(manifest_path)
    except InvalidManifest as e:
        _err(f"error: {e}")
        return EXIT_FAILED

    try:
        # No read timeout: the API answers once the rollout has finished.
        r = requests.post(f"{base}/deployments", json=descriptor.to_dict(), auth=auth, timeout=(10, None))
    except requests.RequestException as e:
        _err(f"error: could not reach {base}: {e}")
        return EXIT_FAILED

    if r.status_code == 409:
        _err(f"error: {r.json().get('detail', 'rollout in progress')}")
        return EXIT_IN_PROGRESS
    if not r.ok:
        _err(f"error: HTTP {r.status_code}: {r.text}")
        return EXIT_FAILED

    result = r.json()
    _print(result)
    return _exit_code(result)


def _get(base: str, path: str, params: dict[str, Any] | None = None) -> int:
    try:
        r = requests.get(f"{base}{path}", params=params, timeout=10)
    except requests.RequestException as e:
        _err(f"error: could not reach {base}: {e}")
        return EXIT_FAILED
    _print(r.json())
    return 0 if r.ok else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="rollctl", description="Single-host container rollout controller")
    p.add_argument("--api", default=None, help="Control API base URL (default: run in-process)")
    p.add_argument("--user", default=os.getenv("ROLLCTL_API_USER", "admin"), help="API user for --api")
    p.add_argument("--password", default=os.getenv("ROLLCTL_API_PASSWORD"), help="API password for --api")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy", help="Roll out the release described by a manifest")
    s_dep.add_argument("manifest", help="Path to the release manifest (YAML or JSON)")

    s_hist = sub.add_parser("history", help="Show rollout records")
    s_hist.add_argument("--app", default=None)
    s_hist.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_logs = sub.add_parser("logs", help="Stream a container's logs")
    s_logs.add_argument("container", help="Container name or id")
    s_logs.add_argument("--follow", "-f", action="store_true")
    s_logs.add_argument("--tail", default="100", help="Number of lines, or 'all'")

    sub.add_parser("abort", help="Roll back the rollout currently health-checking (needs --api)")

    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    base = args.api.rstrip("/") if args.api else None
    auth = (args.user, args.password) if args.password else None

    if args.cmd == "deploy":
        if base:
            return _deploy_remote(base, auth, args.manifest)
        return _deploy_local(args.manifest)

    if args.cmd == "history":
        if base:
            params: dict[str, Any] = {"limit": args.limit}
            if args.app:
                params["app"] = args.app
            return _get(base, "/rollouts", params)
        db.init_db()
        _print([r.to_dict() for r in db.list_rollouts(app=args.app, limit=args.limit)])
        return 0

    if args.cmd == "events":
        if base:
            return _get(base, "/events", {"limit": args.limit})
        db.init_db()
        _print(db.latest_events(args.limit))
        return 0

    if args.cmd == "logs":
        tail: int | str = int(args.tail) if args.tail.isdigit() else args.tail
        try:
            for line in ContainerDriver().logs(args.container, follow=args.follow, tail=tail):
                print(line)
        except RolloutError as e:
            _err(f"error: {e}")
            return EXIT_FAILED
        except KeyboardInterrupt:
            pass
        return 0

    if args.cmd == "abort":
        if not base:
            _err("error: abort needs --api; for an in-process deploy press Ctrl-C instead.")
            return 2
        try:
            r = requests.post(f"{base}/rollouts/abort", auth=auth, timeout=10)
        except requests.RequestException as e:
            _err(f"error: could not reach {base}: {e}")
            return EXIT_FAILED
        _print(r.json())
        return 0 if r.ok else EXIT_FAILED

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
