from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Layout
    vault_dir: str = "vault"
    build_context: str = "."

    # Container naming
    name_prefix: str = "qwen"
    network: str = "qwen-network"

    # Health checks (orchestrator side: published ports on this host)
    health_host: str = "localhost"
    health_path: str = "/health"
    health_attempts: int = 30
    health_interval_s: float = 2.0
    health_timeout_s: float = 2.0

    # Router
    router_probe_timeout_s: float = 2.0
    upstream_timeout_s: float = 120.0
    # None -> reach workers by container name on the shared network.
    service_host: str | None = None

    # Backups
    backup_keep_last: int = 5
    backup_include_models: bool = False

    # Runtime knobs
    gpu_device: str = "/dev/dri"
    manage_systemd: bool = True
    stop_timeout_s: int = 10

    # Host requirements checked before a deployment; 0 disables the memory check.
    min_memory_gb: int = 8
    meminfo_path: str = "/proc/meminfo"

    # Logs
    keep_deployment_logs: int = 10

    @property
    def models_dir(self) -> str:
        return os.path.join(self.vault_dir, "models")

    @property
    def configs_dir(self) -> str:
        return os.path.join(self.vault_dir, "configs")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.vault_dir, "logs")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.vault_dir, "backups")

    @property
    def data_dir(self) -> str:
        """Parent of the per-service writable subdirectories."""
        return os.path.join(self.vault_dir, "services")

    @property
    def db_path(self) -> str:
        return os.path.join(self.logs_dir, "fleet.db")

    def container_name(self, service: str) -> str:
        return f"{self.name_prefix}-{service}"

    def image_repository(self, service: str) -> str:
        return f"{self.name_prefix}-{service}"

    def image_name(self, service: str) -> str:
        return f"{self.image_repository(service)}:latest"

    def unit_name(self, service: str) -> str:
        return f"{self.name_prefix}-{service}.service"

    def backup_excludes(self) -> tuple[str, ...]:
        # Backups never contain themselves; logs are append-only and must survive a restore.
        excludes = ("backups", "logs")
        if not self.backup_include_models:
            excludes += ("models",)
        return excludes


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from FLEET_* environment variables.

    Call once at process start and pass the result explicitly.
    """
    env = os.environ if env is None else env
    d = Settings()
    return Settings(
        vault_dir=os.path.abspath(env.get("FLEET_VAULT_DIR", d.vault_dir)),
        build_context=os.path.abspath(env.get("FLEET_BUILD_CONTEXT", d.build_context)),
        name_prefix=env.get("FLEET_NAME_PREFIX", d.name_prefix),
        network=env.get("FLEET_NETWORK", d.network),
        health_host=env.get("FLEET_HEALTH_HOST", d.health_host),
        health_path=env.get("FLEET_HEALTH_PATH", d.health_path),
        health_attempts=max(1, _env_int(env, "FLEET_HEALTH_ATTEMPTS", d.health_attempts)),
        health_interval_s=max(0.0, _env_float(env, "FLEET_HEALTH_INTERVAL_S", d.health_interval_s)),
        health_timeout_s=_env_float(env, "FLEET_HEALTH_TIMEOUT_S", d.health_timeout_s),
        router_probe_timeout_s=_env_float(env, "FLEET_ROUTER_PROBE_TIMEOUT_S", d.router_probe_timeout_s),
        upstream_timeout_s=_env_float(env, "FLEET_UPSTREAM_TIMEOUT_S", d.upstream_timeout_s),
        service_host=env.get("FLEET_SERVICE_HOST") or None,
        backup_keep_last=max(1, _env_int(env, "FLEET_BACKUP_KEEP_LAST", d.backup_keep_last)),
        backup_include_models=_env_bool(env, "FLEET_BACKUP_INCLUDE_MODELS", d.backup_include_models),
        gpu_device=env.get("FLEET_GPU_DEVICE", d.gpu_device),
        manage_systemd=_env_bool(env, "FLEET_MANAGE_SYSTEMD", d.manage_systemd),
        stop_timeout_s=max(0, _env_int(env, "FLEET_STOP_TIMEOUT_S", d.stop_timeout_s)),
        min_memory_gb=max(0, _env_int(env, "FLEET_MIN_MEMORY_GB", d.min_memory_gb)),
        meminfo_path=env.get("FLEET_MEMINFO_PATH", d.meminfo_path),
        keep_deployment_logs=max(1, _env_int(env, "FLEET_KEEP_DEPLOYMENT_LOGS", d.keep_deployment_logs)),
    )
