from __future__ import annotations

import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Any

import docker
import requests
from docker.errors import DockerException, NotFound
from docker.errors import BuildError as DockerBuildError

from .errors import BuildError, RunError


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

SERVICE_LABEL = "fleet.service"


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


class ContainerRuntime(ABC):
    """Typed contract of the container runtime.

    One method per operation. Stop/remove of something that does not exist is
    a no-op; build/run failures raise BuildError/RunError.
    """

    @abstractmethod
    def available(self) -> bool:
        """True when the runtime daemon answers."""

    @abstractmethod
    def build(self, dockerfile: str, image: str, context: str) -> str:
        """Build `image` from `dockerfile` and return the image id."""

    @abstractmethod
    def run(
        self,
        image: str,
        name: str,
        network: str | None = None,
        ports: dict[int, int] | None = None,
        volumes: dict[str, dict[str, str]] | None = None,
        devices: list[str] | None = None,
        command: list[str] | None = None,
        user: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        """Start a detached container and return its id."""

    @abstractmethod
    def stop(self, name: str) -> None: ...

    @abstractmethod
    def remove(self, name: str) -> None: ...

    @abstractmethod
    def list_names(self, prefix: str) -> list[str]:
        """Names of all containers (any state) starting with `prefix`."""

    @abstractmethod
    def inspect(self, name: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def network_exists(self, name: str) -> bool: ...

    @abstractmethod
    def network_create(self, name: str) -> None: ...

    @abstractmethod
    def network_remove(self, name: str) -> None: ...

    @abstractmethod
    def prune_images(self, repository: str, keep_tag: str = "latest") -> list[str]:
        """Remove every tag of `repository` except `keep_tag`; returns removed tags."""

    @abstractmethod
    def unit_active(self, unit: str) -> bool:
        """True if a systemd unit of that name is running. False without systemd."""

    @abstractmethod
    def stop_unit(self, unit: str) -> bool:
        """Stop a systemd unit if it is active. Returns True if it was stopped."""


class DockerRuntime(ContainerRuntime):
    def __init__(self, client: docker.DockerClient | None = None, stop_timeout_s: int = 10, manage_systemd: bool = True):
        self._client = client
        self.stop_timeout_s = stop_timeout_s
        self.manage_systemd = manage_systemd

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RunError(f"Container runtime unreachable: {e}") from e
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (RunError, DockerException, requests.RequestException):
            return False

    def build(self, dockerfile: str, image: str, context: str) -> str:
        try:
            img, _logs = self.client.images.build(path=context, dockerfile=dockerfile, tag=image, rm=True)
        except DockerBuildError as e:
            raise BuildError(f"Build of {image} failed: {e.msg}") from e
        except (DockerException, requests.RequestException, TypeError) as e:
            raise BuildError(f"Build of {image} failed: {type(e).__name__}: {e}") from e
        return img.id

    def run(
        self,
        image: str,
        name: str,
        network: str | None = None,
        ports: dict[int, int] | None = None,
        volumes: dict[str, dict[str, str]] | None = None,
        devices: list[str] | None = None,
        command: list[str] | None = None,
        user: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "command": command or None,
            "detach": True,
            "name": name,
            "labels": labels or {},
            # Restarts are the orchestrator's decision, not Docker's.
            "restart_policy": {"Name": "no"},
        }
        if network:
            kwargs["network"] = network
        if ports:
            kwargs["ports"] = {f"{int(c)}/tcp": int(h) for c, h in ports.items()}
        if volumes:
            kwargs["volumes"] = volumes
        if devices:
            kwargs["devices"] = devices
        if user:
            kwargs["user"] = user
        try:
            container = self.client.containers.run(image, **kwargs)
        except (DockerException, requests.RequestException) as e:
            raise RunError(f"Could not start {name} from {image}: {type(e).__name__}: {e}") from e
        return container.id

    def stop(self, name: str) -> None:
        try:
            self.client.containers.get(name).stop(timeout=self.stop_timeout_s)
        except NotFound:
            return

    def remove(self, name: str) -> None:
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            return

    def list_names(self, prefix: str) -> list[str]:
        # The daemon's name filter is a substring match; narrow it down to real prefixes.
        containers = self.client.containers.list(all=True, filters={"name": prefix})
        return sorted(c.name for c in containers if c.name.startswith(prefix))

    def inspect(self, name: str) -> dict[str, Any] | None:
        try:
            cont = self.client.containers.get(name)
        except NotFound:
            return None
        cont.reload()
        ports = (cont.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        return {
            "id": cont.id,
            "name": cont.name,
            "status": cont.status,
            "image": (cont.attrs.get("Config") or {}).get("Image"),
            "ports": {k: [b.get("HostPort") for b in (v or [])] for k, v in ports.items()},
            "labels": cont.labels,
        }

    def network_exists(self, name: str) -> bool:
        try:
            self.client.networks.get(name)
            return True
        except NotFound:
            return False
        except (DockerException, requests.RequestException) as e:
            raise RunError(f"Could not look up network {name}: {type(e).__name__}: {e}") from e

    def network_create(self, name: str) -> None:
        try:
            self.client.networks.create(name, driver="bridge")
        except (DockerException, requests.RequestException) as e:
            raise RunError(f"Could not create network {name}: {type(e).__name__}: {e}") from e

    def network_remove(self, name: str) -> None:
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            return

    def prune_images(self, repository: str, keep_tag: str = "latest") -> list[str]:
        keep = f"{repository}:{keep_tag}"
        removed: list[str] = []
        for img in self.client.images.list(name=repository):
            for tag in img.tags:
                if tag == keep or tag.rsplit(":", 1)[0] != repository:
                    continue
                try:
                    self.client.images.remove(tag, force=True)
                except NotFound:
                    continue
                removed.append(tag)
        return sorted(removed)

    def unit_active(self, unit: str) -> bool:
        if not self.manage_systemd or shutil.which("systemctl") is None:
            return False
        return subprocess.run(["systemctl", "is-active", "--quiet", unit], check=False).returncode == 0

    def stop_unit(self, unit: str) -> bool:
        if not self.unit_active(unit):
            return False
        subprocess.run(["systemctl", "stop", unit], check=True)
        return True
