from __future__ import annotations

from scripts.deploy.compose import ContainerOrchestrator
from scripts.deploy.deploy_errors import ConvergenceError
from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import WORKER_SERVICE
from scripts.deploy.remote import describe_failure


class RemoteConverger:
    """Pull declared images and bring the running containers in line with the compose file.

    ``docker compose up -d --remove-orphans`` is itself convergent: a second
    run with an unchanged compose file creates, recreates and removes nothing.
    No rollback is attempted when a step fails.
    """

    def __init__(self, *, orchestrator: ContainerOrchestrator, logger: PhaseLogger):
        self._orchestrator = orchestrator
        self._logger = logger

    def converge(self, *, workers: int | None = None) -> None:
        self._logger.step("Verifying Docker installation on remote server")
        result = self._orchestrator.check_runtime()
        if not result.ok:
            raise ConvergenceError(
                describe_failure(result, action="Docker or Docker Compose not found on remote server")
                + " Install Docker Engine with the compose plugin on the host."
            )

        self._logger.step("Pulling latest Docker images")
        result = self._orchestrator.pull()
        if not result.ok:
            raise ConvergenceError(describe_failure(result, action="docker compose pull failed"))

        scale = {WORKER_SERVICE: workers} if workers else None
        if scale:
            self._logger.info("Scaling %s to %d replica(s)", WORKER_SERVICE, workers)
        self._logger.step("Reconciling running services with docker-compose.yml")
        result = self._orchestrator.converge(scale=scale)
        if not result.ok:
            raise ConvergenceError(
                describe_failure(result, action="docker compose up failed")
                + " The host may be left mid-transition; rerun the deployment once the cause is fixed."
            )
        self._logger.info("Services deployed")
