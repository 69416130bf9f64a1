import itertools
import json
import os
import sys
from datetime import datetime, timedelta

import httpx
import pytest

# Ensure project root is importable (so `import fleet`, `import cli` and `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleet.backups import BackupManager
from fleet.db import Store
from fleet.docker_ops import ContainerRuntime
from fleet.errors import BuildError, RunError
from fleet.health import HealthChecker
from fleet.orchestrator import Orchestrator
from fleet.registry import DEFAULT_REGISTRY
from fleet.settings import Settings


def _service_of(image_or_name: str) -> str:
    # "qwen-coder:latest" / "qwen-coder" -> "coder"
    return image_or_name.split(":")[0].split("-", 1)[1]


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime. Rejects duplicate names like Docker does."""

    def __init__(self, fail_build=(), fail_run=(), on_run=None):
        self.containers: dict[str, dict] = {}
        self.networks: set[str] = set()
        self.active_units: set[str] = set()
        self.calls: list[tuple] = []
        self.fail_build = set(fail_build)
        self.fail_run = set(fail_run)
        self.on_run = on_run
        self.max_seen: dict[str, int] = {}
        self.images: set[str] = set()
        self.reachable = True
        self._ids = itertools.count(1)

    def available(self):
        return self.reachable

    def build(self, dockerfile, image, context):
        self.calls.append(("build", image))
        if _service_of(image) in self.fail_build:
            raise BuildError(f"Build of {image} failed: step 3/7 returned 1")
        self.images.add(image)
        return f"sha256:{image}"

    def run(self, image, name, network=None, ports=None, volumes=None, devices=None, command=None, user=None, labels=None):
        self.calls.append(("run", name))
        if name in self.containers:
            raise RunError(f"Conflict. The container name {name!r} is already in use")
        cid = f"c{next(self._ids)}"
        self.containers[name] = {
            "id": cid,
            "status": "running",
            "image": image,
            "network": network,
            "ports": ports,
            "volumes": volumes,
            "devices": devices,
            "command": command,
            "user": user,
            "labels": labels,
        }
        svc = _service_of(name)
        self.max_seen[svc] = max(self.max_seen.get(svc, 0), sum(1 for n in self.containers if _service_of(n) == svc))
        if svc in self.fail_run:
            raise RunError(f"Could not start {name}: device /dev/dri not found")
        if self.on_run is not None:
            self.on_run(name, self.containers[name])
        return cid

    def stop(self, name):
        self.calls.append(("stop", name))
        if name in self.containers:
            self.containers[name]["status"] = "exited"

    def remove(self, name):
        self.calls.append(("remove", name))
        self.containers.pop(name, None)

    def list_names(self, prefix):
        return sorted(n for n in self.containers if n.startswith(prefix))

    def inspect(self, name):
        c = self.containers.get(name)
        if c is None:
            return None
        return {"id": c["id"], "name": name, "status": c["status"], "ports": c["ports"]}

    def network_exists(self, name):
        return name in self.networks

    def network_create(self, name):
        self.calls.append(("network_create", name))
        self.networks.add(name)

    def network_remove(self, name):
        self.calls.append(("network_remove", name))
        self.networks.discard(name)

    def prune_images(self, repository, keep_tag="latest"):
        old = sorted(t for t in self.images if t.rsplit(":", 1)[0] == repository and t != f"{repository}:{keep_tag}")
        self.images.difference_update(old)
        return old

    def unit_active(self, unit):
        return unit in self.active_units

    def stop_unit(self, unit):
        if unit in self.active_units:
            self.active_units.discard(unit)
            self.calls.append(("stop_unit", unit))
            return True
        return False


class ScriptedHealth(HealthChecker):
    """HealthChecker whose single checks are answered from a table keyed by port."""

    def __init__(self, healthy_ports=(), sequences=None):
        self.sleeps: list[float] = []
        super().__init__(timeout_s=0.1, sleep=self.sleeps.append)
        self.healthy_ports = set(healthy_ports)
        self.sequences = {k: list(v) for k, v in (sequences or {}).items()}
        self.checked: list[str] = []

    def check(self, url, timeout_s=None):
        self.checked.append(url)
        port = int(url.split(":")[2].split("/")[0])
        seq = self.sequences.get(port)
        if seq:
            ok = seq.pop(0)
        else:
            ok = port in self.healthy_ports
        return (True, "Healthy", 1.0) if ok else (False, "HTTP 503", 1.0)


class FakeWorkers:
    """MockTransport handler for every worker's /health and /completion."""

    def __init__(self, down=(), completion_status=200, refuse=()):
        self.down = set(down)
        self.refuse = set(refuse)
        self.completion_status = completion_status
        self.health_calls = []
        self.completions = []

    def __call__(self, request):
        host = request.url.host
        if host in self.refuse:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/health":
            self.health_calls.append(host)
            return httpx.Response(503 if host in self.down else 200, json={"status": "ok"})
        if request.url.path == "/completion":
            self.completions.append((host, json.loads(request.content)))
            if self.completion_status != 200:
                return httpx.Response(self.completion_status, json={"error": "boom"})
            return httpx.Response(200, json={"content": f"answer from {host}"})
        return httpx.Response(404)


def ticking_clock(start=datetime(2026, 10, 19, 12, 0, 0)):
    counter = itertools.count()
    return lambda: start + timedelta(seconds=next(counter))


def write_models(settings, *services):
    os.makedirs(settings.models_dir, exist_ok=True)
    for spec in DEFAULT_REGISTRY:
        if spec.name in services and spec.model_path:
            with open(os.path.join(settings.models_dir, spec.model_path), "wb") as fh:
                fh.write(b"GGUF" + spec.name.encode())


def vault_files(root, exclude=("backups", "logs")):
    """relative path -> bytes for every regular file under root."""
    out = {}
    for dirpath, _dirs, files in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        if rel_dir.split(os.sep)[0] in exclude:
            continue
        for f in files:
            p = os.path.join(dirpath, f)
            with open(p, "rb") as fh:
                out[os.path.relpath(p, root)] = fh.read()
    return out


@pytest.fixture
def settings(tmp_path):
    return Settings(
        vault_dir=str(tmp_path / "vault"),
        build_context=str(tmp_path),
        health_attempts=3,
        health_interval_s=2.0,
        gpu_device=str(tmp_path / "no-such-device"),
        manage_systemd=False,
        min_memory_gb=0,
    )


@pytest.fixture
def store(settings):
    return Store(settings.db_path)


@pytest.fixture
def backups(settings):
    return BackupManager(
        settings.backups_dir,
        keep_last=settings.backup_keep_last,
        exclude=settings.backup_excludes(),
        now=ticking_clock(),
    )


@pytest.fixture
def make_orchestrator(settings, store, backups):
    def _make(runtime, health, registry=DEFAULT_REGISTRY, cancel=None):
        return Orchestrator(settings, registry, runtime, health, backups, store, cancel=cancel, now=ticking_clock())

    return _make
