from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from .docker_ops import validate_service_name
from .settings import Settings

MODELS_MOUNT = "/vault/models"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    port: int | None = None  # None -> internal-only, no health check
    model_path: str | None = None  # relative to vault/models unless absolute
    launch_args: tuple[str, ...] = ()
    depends_on_network: bool = True
    user: str | None = None
    dockerfile: str | None = None

    @property
    def dockerfile_path(self) -> str:
        return self.dockerfile or f"Dockerfile.{self.name}"

    def model_file(self, settings: Settings) -> str | None:
        if not self.model_path:
            return None
        if os.path.isabs(self.model_path):
            return self.model_path
        return os.path.join(settings.models_dir, self.model_path)


def _worker(name: str, port: int, model: str) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        port=port,
        model_path=model,
        launch_args=(
            "--model",
            f"{MODELS_MOUNT}/{model}",
            "--host",
            "0.0.0.0",
            "--port",
            str(port),
        ),
        user="root",
    )


# Router first: it has no model and makes routing possible as soon as one worker is up.
DEFAULT_REGISTRY: tuple[ServiceSpec, ...] = (
    ServiceSpec(name="router", user="root"),
    _worker("coder", 8081, "qwen2.5-coder-7b-instruct-q5_k_m.gguf"),
    _worker("vision", 8082, "Qwen2-VL-7B-Instruct-Q5_K_M.gguf"),
    _worker("voice", 8083, "qwen2-audio-7b-q5_k_m.gguf"),
    _worker("agent", 8084, "qwen3-4b-instruct-q5_k_m.gguf"),
)


def validate_registry(registry: tuple[ServiceSpec, ...]) -> None:
    seen: set[str] = set()
    for spec in registry:
        validate_service_name(spec.name)
        if spec.name in seen:
            raise ValueError(f"Duplicate service name '{spec.name}'.")
        seen.add(spec.name)
        if spec.port is not None and not 1 <= int(spec.port) <= 65535:
            raise ValueError(f"Invalid port {spec.port} for service '{spec.name}'.")


def _spec_from_dict(data: dict[str, Any]) -> ServiceSpec:
    port = data.get("port")
    return ServiceSpec(
        name=str(data["name"]),
        port=int(port) if port is not None else None,
        model_path=data.get("model_path"),
        launch_args=tuple(str(a) for a in data.get("launch_args", ())),
        depends_on_network=bool(data.get("depends_on_network", True)),
        user=data.get("user"),
        dockerfile=data.get("dockerfile"),
    )


def load_registry(settings: Settings) -> tuple[ServiceSpec, ...]:
    """Load vault/configs/services.json if present, else the built-in catalog.

    Loaded once at process start; the result is never mutated.
    """
    path = os.path.join(settings.configs_dir, "services.json")
    if not os.path.exists(path):
        registry = DEFAULT_REGISTRY
    else:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
        if not isinstance(raw, list):
            raise ValueError(f"{path}: expected a list of service objects")
        registry = tuple(_spec_from_dict(item) for item in raw)
    validate_registry(registry)
    return registry


def service_urls(registry: tuple[ServiceSpec, ...], settings: Settings) -> dict[str, str]:
    """Base URL per routable service (services with a port)."""
    urls: dict[str, str] = {}
    for spec in registry:
        if spec.port is None:
            continue
        host = settings.service_host or settings.container_name(spec.name)
        urls[spec.name] = f"http://{host}:{int(spec.port)}"
    return urls


def get_spec(registry: tuple[ServiceSpec, ...], name: str) -> ServiceSpec:
    for spec in registry:
        if spec.name == name:
            return spec
    raise KeyError(name)
