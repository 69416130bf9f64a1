from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# Service states
SKIPPED = "skipped"
BUILDING = "building"
RUNNING = "running"
HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
FAILED = "failed"
ROLLED_BACK = "rolled_back"

# Deployment outcomes
SUCCESS = "success"
PARTIAL_FAILURE = "partial_failure"
OUTCOME_ROLLED_BACK = "rolled_back"

_TRANSITIONS: dict[str | None, set[str]] = {
    None: {SKIPPED, BUILDING},
    BUILDING: {RUNNING, FAILED},
    RUNNING: {HEALTHY, UNHEALTHY, FAILED, ROLLED_BACK},
    HEALTHY: {ROLLED_BACK},
    UNHEALTHY: {ROLLED_BACK},
    SKIPPED: set(),
    FAILED: set(),
    ROLLED_BACK: set(),
}


@dataclass
class ServiceState:
    status: str  # skipped|building|running|healthy|unhealthy|failed|rolled_back
    reason: str | None = None
    container_id: str | None = None
    last_error: str | None = None
    error_kind: str | None = None
    updated_at: str = field(default_factory=utc_now)


@dataclass
class DeploymentRecord:
    """One deployment attempt. Mutable until finalize()."""

    deployment_id: str
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    outcome: str | None = None  # success|partial_failure|rolled_back
    backup_id: str | None = None
    service_states: dict[str, ServiceState] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def finalized(self) -> bool:
        return self.completed_at is not None

    def status_of(self, service: str) -> str | None:
        st = self.service_states.get(service)
        return st.status if st else None

    def transition(self, service: str, status: str, **detail: Any) -> ServiceState:
        if self.finalized:
            raise ValueError(f"Deployment {self.deployment_id} is finalized")
        prev = self.service_states.get(service)
        prev_status = prev.status if prev else None
        if status not in _TRANSITIONS.get(prev_status, set()):
            raise ValueError(f"Illegal transition for '{service}': {prev_status} -> {status}")
        st = ServiceState(
            status=status,
            # container id survives the later transitions so rollback knows what to remove
            container_id=detail.pop("container_id", prev.container_id if prev else None),
            **detail,
        )
        self.service_states[service] = st
        return st

    def add_error(self, kind: str, message: str, service: str | None = None) -> None:
        if self.finalized:
            raise ValueError(f"Deployment {self.deployment_id} is finalized")
        where = f" [{service}]" if service else ""
        self.errors.append(f"{utc_now()} {kind}{where}: {message}")

    def finalize(self, outcome: str) -> None:
        if self.finalized:
            raise ValueError(f"Deployment {self.deployment_id} is finalized")
        if outcome not in {SUCCESS, PARTIAL_FAILURE, OUTCOME_ROLLED_BACK}:
            raise ValueError(f"Unknown outcome {outcome!r}")
        self.outcome = outcome
        self.completed_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentRecord:
        states = {k: ServiceState(**v) for k, v in (data.get("service_states") or {}).items()}
        return cls(
            deployment_id=data["deployment_id"],
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            outcome=data.get("outcome"),
            backup_id=data.get("backup_id"),
            service_states=states,
            errors=list(data.get("errors") or []),
        )


@dataclass(frozen=True)
class BackupRecord:
    backup_id: str
    path: str
    created_at: str
    size_bytes: int
    label: str


@dataclass(frozen=True)
class RouteDecision:
    target_service: str
    matched_keyword: str | None
    fallback_used: bool
    tag: str | None = None
