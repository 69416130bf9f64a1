from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import DeploymentRecord


class FleetError(Exception):
    """Base class for every failure the operator can see."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class PreconditionMissing(FleetError):
    pass


class BuildError(FleetError):
    pass


class RunError(FleetError):
    pass


class HealthCheckTimeout(FleetError):
    pass


class BackupError(FleetError):
    pass


class RestoreError(FleetError):
    pass


class ServiceUnavailable(FleetError):
    def __init__(self, service: str, detail: str = ""):
        self.service = service
        msg = f"Service '{service}' is unavailable"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class UpstreamError(FleetError):
    def __init__(self, service: str, detail: str):
        self.service = service
        super().__init__(f"Request to '{service}' failed: {detail}")


class DeploymentInterrupted(FleetError):
    """Raised after an interrupted deployment has been rolled back."""

    def __init__(self, record: "DeploymentRecord"):
        self.record = record
        super().__init__(f"Deployment {record.deployment_id} interrupted and rolled back")


class RequirementsNotMet(FleetError):
    """Host cannot run the fleet (runtime unreachable, not enough memory)."""


class DeploymentAborted(FleetError):
    """Raised after a deployment hit an unexpected error and was rolled back."""

    def __init__(self, record: "DeploymentRecord", cause: str):
        self.record = record
        self.cause = cause
        super().__init__(f"Deployment {record.deployment_id} aborted and rolled back: {cause}")
