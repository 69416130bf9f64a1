from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Any

import requests

from fleet.api import build_router
from fleet.backups import BackupManager
from fleet.db import Store
from fleet.docker_ops import DockerRuntime
from fleet.errors import DeploymentAborted, DeploymentInterrupted, FleetError
from fleet.health import HealthChecker
from fleet.orchestrator import Orchestrator
from fleet.registry import load_registry
from fleet.settings import Settings, load_settings
from fleet.state import FAILED, OUTCOME_ROLLED_BACK, DeploymentRecord


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _fail(kind: str, message: str, code: int = 1) -> int:
    print(f"error: {kind}: {message}", file=sys.stderr)
    return code


def build_backups(settings: Settings) -> BackupManager:
    return BackupManager(settings.backups_dir, keep_last=settings.backup_keep_last, exclude=settings.backup_excludes())


def build_orchestrator(settings: Settings, cancel: threading.Event | None = None) -> Orchestrator:
    return Orchestrator(
        settings,
        load_registry(settings),
        DockerRuntime(stop_timeout_s=settings.stop_timeout_s, manage_systemd=settings.manage_systemd),
        HealthChecker(timeout_s=settings.health_timeout_s),
        build_backups(settings),
        Store(settings.db_path),
        cancel=cancel,
    )


def _deploy_exit_code(record: DeploymentRecord) -> int:
    if record.outcome == OUTCOME_ROLLED_BACK:
        return 1
    # Skips are recovered locally; build/run failures are not.
    if any(st.status == FAILED for st in record.service_states.values()):
        return 1
    return 0


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    p = argparse.ArgumentParser(description="Inference fleet deployment and routing CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy-all", help="Build, start and health-check every service")
    s_dep.add_argument("--timestamp", help="Deployment timestamp (YYYYmmdd_HHMMSS), default now")

    sub.add_parser("cleanup", help="Stop and remove every managed container and the network")
    sub.add_parser("status", help="Show the managed containers")

    s_bak = sub.add_parser("backup", help="Vault backups")
    bak = s_bak.add_subparsers(dest="backup_cmd", required=True)
    b_create = bak.add_parser("create", help="Create a backup now")
    b_create.add_argument("--label", default="manual")
    bak.add_parser("list", help="List backups, newest first")
    b_restore = bak.add_parser("restore", help="Restore a backup (current state is backed up first)")
    b_restore.add_argument("backup_id", help="Backup id or 'latest'")

    s_route = sub.add_parser("route", help="Route a query to the matching service")
    s_route.add_argument("query", nargs="+")
    s_route.add_argument("--api", help="Router service base URL; default routes in-process")
    s_route.add_argument("--no-forward", action="store_true", help="Only show the routing decision")

    s_hist = sub.add_parser("history", help="Show past deployments")
    s_hist.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--deployment", help="Only events of this deployment id")

    args = p.parse_args(argv)
    settings = settings or load_settings()

    try:
        if args.cmd == "deploy-all":
            ts = datetime.strptime(args.timestamp, "%Y%m%d_%H%M%S") if args.timestamp else None
            cancel = threading.Event()
            previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
            try:
                record = build_orchestrator(settings, cancel=cancel).deploy_all(ts)
            except DeploymentInterrupted as e:
                _print(e.record.to_dict())
                return _fail(e.kind, str(e), code=130)
            except DeploymentAborted as e:
                _print(e.record.to_dict())
                return _fail(e.kind, str(e))
            finally:
                signal.signal(signal.SIGTERM, previous)
            _print(record.to_dict())
            code = _deploy_exit_code(record)
            if code:
                last = record.errors[-1] if record.errors else record.outcome
                return _fail("DeploymentFailed", f"outcome {record.outcome}; {last}", code)
            return 0

        if args.cmd == "cleanup":
            failures = build_orchestrator(settings).cleanup()
            _print({"failures": failures})
            return _fail("CleanupIncomplete", f"{len(failures)} steps failed") if failures else 0

        if args.cmd == "status":
            _print(build_orchestrator(settings).status())
            return 0

        if args.cmd == "backup":
            if args.backup_cmd == "create":
                rec = build_backups(settings).create(settings.vault_dir, label=args.label)
                _print(asdict(rec))
                return 0
            if args.backup_cmd == "list":
                _print([asdict(r) for r in build_backups(settings).list()])
                return 0
            if args.backup_cmd == "restore":
                saved = build_orchestrator(settings).restore_backup(args.backup_id)
                _print({"restored": args.backup_id, "previous_state": asdict(saved)})
                return 0

        if args.cmd == "route":
            query = " ".join(args.query)
            if args.api:
                base = args.api.rstrip("/")
                r = requests.post(f"{base}/route", json={"query": query, "forward": not args.no_forward}, timeout=settings.upstream_timeout_s)
                try:
                    body = r.json()
                except ValueError:
                    return _fail("UpstreamError", f"HTTP {r.status_code} from {base}/route with a non-JSON body")
                _print(body)
                return 0 if r.ok else 1
            router = build_router(settings)
            decision = router.route(query)
            out: dict[str, Any] = asdict(decision)
            if not args.no_forward:
                out["completion"] = router.forward(decision, query)
            _print(out)
            return 0

        if args.cmd == "history":
            _print(Store(settings.db_path).list_deployments(args.limit))
            return 0

        if args.cmd == "events":
            _print(Store(settings.db_path).latest_events(args.limit, deployment_id=args.deployment))
            return 0
    except FleetError as e:
        return _fail(e.kind, str(e))
    except ValueError as e:
        return _fail("ConfigError", str(e))
    except requests.RequestException as e:
        return _fail("UpstreamError", f"{type(e).__name__}: {e}")
    except KeyboardInterrupt:
        return _fail("Interrupted", "interrupted by operator", code=130)

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
