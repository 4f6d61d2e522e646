"""Single-snapshot health verification.

One observation after a fixed settle window, no polling loop. Services still
converging show up as ``unknown`` and only produce a warning; operators
re-check manually with ``docker compose ps``.
"""
from __future__ import annotations

import time
from typing import Callable

import requests

from scripts.deploy.compose import ContainerOrchestrator, classify_services, parse_compose_ps
from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import ServiceHealth, ServiceHealthReport


CONVERGE_SETTLE_SECONDS = 30
RESTART_SETTLE_SECONDS = 10
PUBLIC_PROBE_TIMEOUT_SECONDS = 10


class HealthVerifier:
    def __init__(
        self,
        *,
        orchestrator: ContainerOrchestrator,
        services: list[str],
        logger: PhaseLogger,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._orchestrator = orchestrator
        self._services = list(services)
        self._logger = logger
        self._dry_run = dry_run
        self._sleep = sleep

    def verify(self, *, label: str, settle_seconds: int = CONVERGE_SETTLE_SECONDS) -> ServiceHealthReport:
        if settle_seconds > 0:
            if self._dry_run:
                self._logger.dry_run("wait %ds for services to stabilize", settle_seconds)
            else:
                self._logger.info("Waiting for services to stabilize (%d seconds)...", settle_seconds)
                self._sleep(settle_seconds)

        self._logger.step("Checking service health (%s)", label)
        result = self._orchestrator.status()
        if self._dry_run:
            return ServiceHealthReport(
                label=label,
                services={name: ServiceHealth.UNKNOWN for name in self._services},
                observed=False,
            )

        unknown = {name: ServiceHealth.UNKNOWN for name in self._services}
        if not result.ok:
            self._logger.warning("Could not query service status: %s", result.text or f"exit code {result.returncode}")
            report = ServiceHealthReport(label=label, services=unknown)
        else:
            try:
                entries = parse_compose_ps(result.stdout)
            except ValueError as exc:
                self._logger.warning("Unreadable docker compose ps output: %s", exc)
                report = ServiceHealthReport(label=label, services=unknown)
            else:
                report = ServiceHealthReport(label=label, services=classify_services(entries, self._services))

        self.render(report)
        return report

    def render(self, report: ServiceHealthReport) -> None:
        for name, status in report.services.items():
            log = self._logger.info if status is ServiceHealth.HEALTHY else self._logger.warning
            log("  %-12s %s", name, status.value, extra={"service": name, "status": status.value})
        if report.degraded:
            self._logger.warning("Some services are not yet healthy; they may still be starting up.")
        else:
            self._logger.info("All services are healthy")


def probe_public_endpoint(url: str, *, timeout_seconds: int = PUBLIC_PROBE_TIMEOUT_SECONDS) -> str:
    """Return an empty string when ``<url>/healthz`` answers 2xx, else a warning text."""
    endpoint = f"{url.rstrip('/')}/healthz"
    try:
        response = requests.get(endpoint, timeout=timeout_seconds)
    except requests.RequestException as exc:
        return f"Public endpoint {endpoint} is not reachable yet: {exc}"
    if response.status_code < 200 or response.status_code >= 300:
        return f"Public endpoint {endpoint} answered HTTP {response.status_code}"
    return ""
