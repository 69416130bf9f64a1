from __future__ import annotations

import glob
import json
import os
import threading
from datetime import datetime
from typing import Any, Callable

from .backups import BackupManager
from .db import Store
from .docker_ops import SERVICE_LABEL, ContainerRuntime
from .errors import (
    BackupError,
    BuildError,
    DeploymentAborted,
    DeploymentInterrupted,
    FleetError,
    HealthCheckTimeout,
    PreconditionMissing,
    RequirementsNotMet,
    RestoreError,
    RunError,
)
from .health import HealthChecker
from .registry import MODELS_MOUNT, ServiceSpec
from .settings import Settings
from .state import (
    BUILDING,
    FAILED,
    HEALTHY,
    OUTCOME_ROLLED_BACK,
    PARTIAL_FAILURE,
    ROLLED_BACK,
    RUNNING,
    SKIPPED,
    SUCCESS,
    UNHEALTHY,
    BackupRecord,
    DeploymentRecord,
)


def available_memory_kb(meminfo_path: str) -> int | None:
    """MemAvailable from a /proc/meminfo style file, or None if unreadable."""
    try:
        with open(meminfo_path, encoding="utf-8") as fh:
            for line in fh:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1])
    except (OSError, ValueError, IndexError):
        return None
    return None


class _RollbackRequired(Exception):
    def __init__(self, reason: str, interrupted: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.interrupted = interrupted


class Orchestrator:
    """Sequential build -> run -> health-check deployment of the registry.

    Guarantees at most one container per service name: every service is
    cleaned up (systemd unit, exact container, prefixed orphans) before a
    new container is created. A single unhealthy service rolls back the
    whole run.
    """

    def __init__(
        self,
        settings: Settings,
        registry: tuple[ServiceSpec, ...],
        runtime: ContainerRuntime,
        health: HealthChecker,
        backups: BackupManager,
        store: Store,
        cancel: threading.Event | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.registry = registry
        self.runtime = runtime
        self.health = health
        self.backups = backups
        self.store = store
        self.cancel = cancel
        self._now = now

    # ------------------------------------------------------------------ deploy

    def deploy_all(self, timestamp: datetime | None = None) -> DeploymentRecord:
        ts = timestamp or self._now()
        record = DeploymentRecord(deployment_id=self._allocate_id(ts))
        self._log("INFO", f"Starting deployment {record.deployment_id}", record=record)

        try:
            self.check_requirements()
        except RequirementsNotMet as e:
            self._log("ERROR", f"{e.kind}: {e}", record=record)
            raise
        self._setup_directories()
        try:
            pre = self.backups.create(self.settings.vault_dir, label="pre_deployment")
        except BackupError as e:
            self._log("ERROR", f"{e.kind}: {e}", record=record)
            raise
        record.backup_id = pre.backup_id
        self._log("INFO", f"Pre-deployment backup created: {pre.backup_id}", record=record)

        created: list[str] = []  # container names started during this run, in order
        interrupted = False
        try:
            self._ensure_network(record)
            for spec in self.registry:
                if self.cancel is not None and self.cancel.is_set():
                    raise _RollbackRequired("User interruption", interrupted=True)
                self._deploy_service(spec, record, created)
        except _RollbackRequired as rb:
            interrupted = rb.interrupted
            self._rollback(record, created, pre, rb.reason)
        except KeyboardInterrupt:
            interrupted = True
            record.add_error("Interrupted", "deployment interrupted by operator")
            self._log("ERROR", "Deployment interrupted by operator", record=record)
            self._rollback(record, created, pre, "User interruption")
        except Exception as e:
            kind = e.kind if isinstance(e, FleetError) else type(e).__name__
            cause = f"{kind}: {e}"
            record.add_error(kind, str(e))
            self._log("ERROR", f"Unexpected failure: {cause}", record=record)
            self._rollback(record, created, pre, cause)
            raise DeploymentAborted(record, cause) from e

        if record.outcome is None:
            self._finalize(record)
        if interrupted:
            raise DeploymentInterrupted(record)
        return record

    def _allocate_id(self, ts: datetime) -> str:
        # Second resolution keeps ids readable; later runs in the same second get a suffix.
        base = ts.strftime("%Y%m%d_%H%M%S")
        candidate, n = base, 0
        while self.store.get_deployment(candidate) is not None or os.path.exists(self._artifact_path(candidate)):
            n += 1
            candidate = f"{base}_{n}"
        return candidate

    def check_requirements(self) -> None:
        """Refuse to deploy on a host that cannot run the fleet."""
        if not self.runtime.available():
            raise RequirementsNotMet("Container runtime is not reachable")
        if self.settings.min_memory_gb <= 0:
            return
        kb = available_memory_kb(self.settings.meminfo_path)
        if kb is None:
            self._log("WARN", f"Cannot read {self.settings.meminfo_path}; skipping memory check")
            return
        gb = kb // (1024 * 1024)
        if gb < self.settings.min_memory_gb:
            raise RequirementsNotMet(
                f"Insufficient memory: {gb}GB available, need at least {self.settings.min_memory_gb}GB"
            )

    def _deploy_service(self, spec: ServiceSpec, record: DeploymentRecord, created: list[str]) -> None:
        name = spec.name
        container = self.settings.container_name(name)

        model = spec.model_file(self.settings)
        if model and not os.path.isfile(model):
            err = PreconditionMissing(f"model file {model} not found")
            record.transition(name, SKIPPED, reason="model unavailable", last_error=str(err), error_kind=err.kind)
            self._log("WARN", f"{err.kind}: {err}; skipping", service=name, record=record)
            return

        self._log("INFO", f"Deploying {name}", service=name, record=record)
        self._cleanup_service(name, record)

        record.transition(name, BUILDING)
        try:
            self.runtime.build(spec.dockerfile_path, self.settings.image_name(name), self.settings.build_context)
        except BuildError as e:
            record.transition(name, FAILED, last_error=str(e), error_kind=e.kind)
            record.add_error(e.kind, str(e), name)
            self._log("ERROR", f"{e.kind}: {e}", service=name, record=record)
            return

        try:
            container_id = self.runtime.run(
                self.settings.image_name(name),
                container,
                network=self.settings.network if spec.depends_on_network else None,
                ports={spec.port: spec.port} if spec.port else None,
                volumes=self._volumes_for(spec),
                devices=self._devices(),
                command=list(spec.launch_args) or None,
                user=spec.user,
                labels={SERVICE_LABEL: name},
            )
        except RunError as e:
            record.transition(name, FAILED, last_error=str(e), error_kind=e.kind)
            record.add_error(e.kind, str(e), name)
            self._log("ERROR", f"{e.kind}: {e}", service=name, record=record)
            # A failed start can still leave a created container behind.
            self._best_effort(record, f"remove {container}", self.runtime.remove, container)
            return

        created.append(container)
        record.transition(name, RUNNING, container_id=container_id)
        self._log("INFO", f"Started container {container}", service=name, record=record)

        if spec.port is None:
            record.transition(name, HEALTHY, reason="no health check required")
            self._log("INFO", f"{name} deployed (internal only, no health check)", service=name, record=record)
            return

        url = f"http://{self.settings.health_host}:{int(spec.port)}{self.settings.health_path}"
        result = self.health.probe(
            url,
            attempts=self.settings.health_attempts,
            interval_s=self.settings.health_interval_s,
            cancel=self.cancel,
        )
        if result.cancelled:
            record.transition(name, UNHEALTHY, last_error="health check cancelled")
            record.add_error("Interrupted", "deployment cancelled during health check", name)
            raise _RollbackRequired("User interruption", interrupted=True)
        if not result.healthy:
            err = HealthCheckTimeout(
                f"{container} unhealthy after {result.attempts_used} attempts: {result.last_error}"
            )
            record.transition(name, UNHEALTHY, last_error=str(err), error_kind=err.kind)
            record.add_error(err.kind, str(err), name)
            self._log("ERROR", f"{err.kind}: {err}", service=name, record=record)
            raise _RollbackRequired(f"{name} failed health check")

        record.transition(name, HEALTHY)
        self._log("INFO", f"{name} is healthy", service=name, record=record)

    def _volumes_for(self, spec: ServiceSpec) -> dict[str, dict[str, str]]:
        # Each worker only sees its own writable subdirectory of the vault.
        data = os.path.abspath(os.path.join(self.settings.data_dir, spec.name))
        return {
            data: {"bind": "/vault/data", "mode": "rw"},
            os.path.abspath(self.settings.models_dir): {"bind": MODELS_MOUNT, "mode": "ro"},
            os.path.abspath(self.settings.configs_dir): {"bind": "/vault/configs", "mode": "ro"},
        }

    def _devices(self) -> list[str] | None:
        dev = self.settings.gpu_device
        if dev and os.path.exists(dev):
            return [f"{dev}:{dev}:rwm"]
        return None

    def _setup_directories(self) -> None:
        s = self.settings
        for d in (s.models_dir, s.configs_dir, s.logs_dir, s.backups_dir, s.data_dir):
            os.makedirs(d, exist_ok=True)
        for spec in self.registry:
            os.makedirs(os.path.join(s.data_dir, spec.name), exist_ok=True)

    def _ensure_network(self, record: DeploymentRecord) -> None:
        if self.runtime.network_exists(self.settings.network):
            return
        self.runtime.network_create(self.settings.network)
        self._log("INFO", f"Created network '{self.settings.network}'", record=record)

    def _finalize(self, record: DeploymentRecord) -> None:
        statuses = [st.status for st in record.service_states.values()]
        if statuses and all(s == HEALTHY for s in statuses) and len(statuses) == len(self.registry):
            outcome = SUCCESS
        else:
            outcome = PARTIAL_FAILURE
        self._persist(record, outcome)
        if outcome == SUCCESS:
            with open(os.path.join(self.settings.logs_dir, "last_successful_deployment"), "w", encoding="utf-8") as fh:
                fh.write(record.deployment_id + "\n")

    def _artifact_path(self, deployment_id: str) -> str:
        return os.path.join(self.settings.logs_dir, f"deployment_{deployment_id}.json")

    def _persist(self, record: DeploymentRecord, outcome: str) -> None:
        record.finalize(outcome)
        os.makedirs(self.settings.logs_dir, exist_ok=True)
        path = self._artifact_path(record.deployment_id)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(record.to_dict(), fh, indent=2)
        self.store.save_deployment(record)
        level = "INFO" if outcome == SUCCESS else "WARN" if outcome == PARTIAL_FAILURE else "ERROR"
        self._log(level, f"Deployment {record.deployment_id} finished: {outcome}", record=record)

    # ---------------------------------------------------------------- rollback

    def _rollback(self, record: DeploymentRecord, created: list[str], pre: BackupRecord, reason: str) -> None:
        """Full-run rollback. Every step is attempted; failures are only logged."""
        self._log("ERROR", f"Rolling back deployment: {reason}", record=record)

        targets = list(created)
        for spec in self.registry:
            # interrupted between run() returning and the bookkeeping
            if record.status_of(spec.name) == BUILDING:
                targets.append(self.settings.container_name(spec.name))

        for container in reversed(targets):
            self._best_effort(record, f"stop {container}", self.runtime.stop, container)
            self._best_effort(record, f"remove {container}", self.runtime.remove, container)

        self._best_effort(record, f"remove network {self.settings.network}", self.runtime.network_remove, self.settings.network)

        try:
            self._restore(pre)
            self._log("INFO", f"Restored vault from {pre.backup_id}", record=record)
        except (BackupError, RestoreError) as e:
            record.add_error(e.kind, str(e))
            self._log("ERROR", f"{e.kind}: {e}", record=record)

        for spec in self.registry:
            status = record.status_of(spec.name)
            if status in {RUNNING, HEALTHY, UNHEALTHY}:
                record.transition(spec.name, ROLLED_BACK)
            elif status == BUILDING:
                record.transition(spec.name, FAILED, last_error="deployment rolled back")
            elif status is None:
                record.transition(spec.name, SKIPPED, reason="deployment rolled back")

        self._persist(record, OUTCOME_ROLLED_BACK)

    def _restore(self, target: BackupRecord) -> BackupRecord:
        # Snapshot what is on disk now so the restore itself can be undone.
        current = self.backups.create(self.settings.vault_dir, label="pre_restore", protect=(target.path,))
        self.backups.restore(target, self.settings.vault_dir)
        return current

    def _best_effort(self, record: DeploymentRecord | None, what: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            fn(*args)
            return True
        except Exception as e:
            msg = f"Teardown step '{what}' failed: {type(e).__name__}: {e}"
            if record is not None and not record.finalized:
                record.add_error("RollbackStepFailed", msg)
            self._log("ERROR", msg, record=record)
            return False

    # ----------------------------------------------------------------- cleanup

    def _cleanup_service(self, name: str, record: DeploymentRecord | None = None) -> list[str]:
        """Stop and remove anything that could be a previous instance of `name`."""
        failures: list[str] = []
        container = self.settings.container_name(name)

        unit = self.settings.unit_name(name)
        try:
            if self.runtime.stop_unit(unit):
                self._log("INFO", f"Stopped systemd unit {unit}", service=name, record=record)
        except Exception as e:
            failures.append(f"stop unit {unit}: {type(e).__name__}: {e}")

        try:
            stale = self.runtime.list_names(container)
        except Exception as e:
            failures.append(f"list {container}*: {type(e).__name__}: {e}")
            stale = [container]
        if container not in stale:
            stale.append(container)

        for c in stale:
            if c != container:
                self._log("WARN", f"Removing orphaned container {c}", service=name, record=record)
            for what, fn in (("stop", self.runtime.stop), ("remove", self.runtime.remove)):
                try:
                    fn(c)
                except Exception as e:
                    failures.append(f"{what} {c}: {type(e).__name__}: {e}")

        for f in failures:
            self._log("ERROR", f"Cleanup step failed: {f}", service=name, record=record)
        return failures

    def cleanup(self) -> list[str]:
        """Tear down every managed container and the network. Safe to repeat."""
        self._log("INFO", "Starting cleanup")
        failures: list[str] = []
        for spec in self.registry:
            failures.extend(self._cleanup_service(spec.name))

        prefix = f"{self.settings.name_prefix}-"
        try:
            leftovers = self.runtime.list_names(prefix)
        except Exception as e:
            failures.append(f"list {prefix}*: {type(e).__name__}: {e}")
            leftovers = []
        for c in leftovers:
            for what, fn in (("stop", self.runtime.stop), ("remove", self.runtime.remove)):
                try:
                    fn(c)
                except Exception as e:
                    failures.append(f"{what} {c}: {type(e).__name__}: {e}")

        try:
            self.runtime.network_remove(self.settings.network)
        except Exception as e:
            failures.append(f"remove network {self.settings.network}: {type(e).__name__}: {e}")

        for spec in self.registry:
            repo = self.settings.image_repository(spec.name)
            try:
                removed = self.runtime.prune_images(repo)
            except Exception as e:
                failures.append(f"prune images {repo}: {type(e).__name__}: {e}")
                continue
            if removed:
                self._log("INFO", f"Removed old images: {', '.join(removed)}", service=spec.name)

        try:
            pruned = self.prune_deployment_logs()
        except OSError as e:
            failures.append(f"prune deployment logs: {type(e).__name__}: {e}")
        else:
            if pruned:
                self._log("INFO", f"Removed {len(pruned)} old deployment logs")

        failures.extend(self.verify_cleanup())

        if failures:
            self._log("WARN", f"Cleanup finished with {len(failures)} failed steps")
        else:
            self._log("INFO", "Cleanup completed")
        return failures

    def prune_deployment_logs(self, keep_last: int | None = None) -> list[str]:
        """Delete deployment_<id>.json artifacts beyond the newest `keep_last`."""
        keep = self.settings.keep_deployment_logs if keep_last is None else max(1, int(keep_last))
        # Ids start with the timestamp, so name order is age order.
        paths = sorted(glob.glob(os.path.join(self.settings.logs_dir, "deployment_*.json")), reverse=True)
        removed: list[str] = []
        for path in paths[keep:]:
            os.remove(path)
            removed.append(path)
        return removed

    def verify_cleanup(self) -> list[str]:
        """Anything managed that is still around after a cleanup."""
        issues: list[str] = []
        prefix = f"{self.settings.name_prefix}-"
        try:
            for c in self.runtime.list_names(prefix):
                issues.append(f"verify: container {c} still present")
            if self.runtime.network_exists(self.settings.network):
                issues.append(f"verify: network {self.settings.network} still present")
            for spec in self.registry:
                unit = self.settings.unit_name(spec.name)
                if self.runtime.unit_active(unit):
                    issues.append(f"verify: unit {unit} still active")
        except Exception as e:
            issues.append(f"verify: {type(e).__name__}: {e}")
        for issue in issues:
            self._log("WARN", f"Cleanup verification: {issue}")
        return issues

    # ------------------------------------------------------------------ extras

    def restore_backup(self, backup_id: str) -> BackupRecord:
        """Restore a backup by id ('latest' for the newest); returns the safety snapshot."""
        target = self.backups.latest() if backup_id == "latest" else self.backups.get(backup_id)
        if target is None:
            raise RestoreError("No backups available")
        current = self._restore(target)
        self._log("INFO", f"Restored vault from {target.backup_id} (previous state saved as {current.backup_id})")
        return current

    def status(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for spec in self.registry:
            info = self.runtime.inspect(self.settings.container_name(spec.name))
            out[spec.name] = info or {"status": "absent"}
        return out

    def _log(self, level: str, message: str, service: str | None = None, record: DeploymentRecord | None = None) -> None:
        self.store.log_event(level, message, service_name=service, deployment_id=record.deployment_id if record else None)
