"""Docker Compose on the remote host, plus parsing of the local compose file."""
from __future__ import annotations

import json
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from scripts.deploy.deploy_models import CORE_SERVICES, CommandResult, ServiceHealth
from scripts.deploy.remote import RemoteExecutor, in_remote_dir


COMPOSE_FILE = "docker-compose.yml"


def _load_compose_services(compose_path: Path) -> dict[str, Any]:
    if not compose_path.exists():
        return {}
    payload = yaml.safe_load(compose_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        return {}
    services = payload.get("services")
    if not isinstance(services, dict):
        return {}
    return services


def declared_services(compose_path: Path) -> list[str]:
    """Service names of the compose file, or the core n8n set when it declares none."""
    services = list(_load_compose_services(compose_path).keys())
    return [str(name) for name in services] or list(CORE_SERVICES)


def declared_images(compose_path: Path) -> list[str]:
    images: list[str] = []
    for service_payload in _load_compose_services(compose_path).values():
        if not isinstance(service_payload, dict):
            continue
        image = str(service_payload.get("image") or "").strip()
        if image and image not in images:
            images.append(image)
    return images


def compose_cmd(*args: str) -> str:
    return shlex.join(["docker", "compose", *args])


def parse_compose_ps(output: str) -> list[dict[str, Any]]:
    """Parse ``docker compose ps --format json``.

    Older Compose releases print one JSON array, newer ones one object per
    line. Raises ``ValueError`` on anything else.
    """
    text = str(output or "").strip()
    if not text:
        return []
    if text.startswith("["):
        parsed = json.loads(text)
        if not isinstance(parsed, list):
            raise ValueError("Expected a JSON array from docker compose ps")
        return [item for item in parsed if isinstance(item, dict)]

    out: list[dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        item = json.loads(line)
        if isinstance(item, dict):
            out.append(item)
    return out


_SEVERITY = {
    ServiceHealth.HEALTHY: 0,
    ServiceHealth.UNKNOWN: 1,
    ServiceHealth.UNHEALTHY: 2,
}


def classify_container(entry: dict[str, Any]) -> ServiceHealth:
    health = str(entry.get("Health") or "").strip().lower()
    state = str(entry.get("State") or "").strip().lower()
    if health == "healthy":
        return ServiceHealth.HEALTHY
    if health == "unhealthy":
        return ServiceHealth.UNHEALTHY
    if health == "starting":
        return ServiceHealth.UNKNOWN
    # No health check declared: fall back to the container state.
    if state == "running":
        return ServiceHealth.HEALTHY
    if state in {"created", "restarting"}:
        return ServiceHealth.UNKNOWN
    return ServiceHealth.UNHEALTHY


def classify_services(entries: list[dict[str, Any]], services: list[str]) -> dict[str, ServiceHealth]:
    by_service: dict[str, list[dict[str, Any]]] = {}
    for entry in entries:
        name = str(entry.get("Service") or "").strip()
        if name:
            by_service.setdefault(name, []).append(entry)

    out: dict[str, ServiceHealth] = {}
    for service in services:
        containers = by_service.get(service)
        if not containers:
            out[service] = ServiceHealth.ABSENT
            continue
        statuses = [classify_container(item) for item in containers]
        out[service] = max(statuses, key=lambda status: _SEVERITY[status])
    return out


def _scale_args(scale: dict[str, int] | None) -> list[str]:
    args: list[str] = []
    for service, replicas in sorted((scale or {}).items()):
        args.extend(["--scale", f"{service}={int(replicas)}"])
    return args


class ContainerOrchestrator(ABC):
    @abstractmethod
    def check_runtime(self) -> CommandResult:
        ...

    @abstractmethod
    def pull(self) -> CommandResult:
        ...

    @abstractmethod
    def converge(self, *, scale: dict[str, int] | None = None) -> CommandResult:
        ...

    @abstractmethod
    def recreate(self, services: list[str], *, scale: dict[str, int] | None = None) -> CommandResult:
        """Re-create *services* if their resolved configuration changed, so a new .env takes effect."""

    @abstractmethod
    def status(self) -> CommandResult:
        ...


class ComposeOrchestrator(ContainerOrchestrator):
    def __init__(self, *, executor: RemoteExecutor, remote_path: str):
        self._executor = executor
        self._remote_path = remote_path

    def _compose(self, *args: str) -> CommandResult:
        return self._executor.run(in_remote_dir(self._remote_path, compose_cmd(*args)))

    def check_runtime(self) -> CommandResult:
        return self._executor.run("command -v docker >/dev/null && docker compose version")

    def pull(self) -> CommandResult:
        return self._compose("pull")

    def converge(self, *, scale: dict[str, int] | None = None) -> CommandResult:
        return self._compose("up", "-d", "--remove-orphans", *_scale_args(scale))

    def recreate(self, services: list[str], *, scale: dict[str, int] | None = None) -> CommandResult:
        # `up` re-reads .env; `restart` would keep the old container environment.
        return self._compose("up", "-d", "--no-deps", *_scale_args(scale), *services)

    def status(self) -> CommandResult:
        return self._compose("ps", "--all", "--format", "json")
