"""Error taxonomy for the n8n deployer.

Every fatal condition raised by a deploy component is a :class:`DeployError`
carrying the pipeline phase it belongs to, a machine-readable ``kind`` and
the process exit code :func:`n8n_deploy.main` reports for it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scripts.deploy.deploy_models import EdgePhase


class DeployError(Exception):
    phase = "deploy"
    kind = "deploy_error"
    exit_code = 1

    def __init__(self, message: str, *, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail.strip()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} {self.detail}"
        return self.message


class ConfigurationError(DeployError):
    phase = "arguments"
    kind = "configuration"
    exit_code = 2

    def __init__(self, message: str, *, field: str = "", detail: str = "") -> None:
        super().__init__(message, detail=detail)
        self.field = field


class PreflightError(DeployError):
    phase = "preflight"
    kind = "preflight"
    exit_code = 3


class CredentialNotFoundError(PreflightError):
    kind = "credential_not_found"

    def __init__(self, key_path: str) -> None:
        super().__init__(f"SSH key not found: {key_path}")
        self.key_path = key_path


class MissingFilesError(PreflightError):
    kind = "missing_files"

    def __init__(self, missing: list[str]) -> None:
        listing = ", ".join(missing)
        super().__init__(f"Missing required files: {listing}")
        self.missing = list(missing)


class RemoteUnreachableError(PreflightError):
    kind = "remote_unreachable"


class TransferError(DeployError):
    phase = "sync"
    kind = "transfer"
    exit_code = 4


class ConvergenceError(DeployError):
    phase = "converge"
    kind = "convergence"
    exit_code = 5


class EdgeConfigurationError(DeployError):
    phase = "edge"
    kind = "edge_configuration"
    exit_code = 6

    def __init__(self, message: str, *, sub_phase: EdgePhase, detail: str = "") -> None:
        super().__init__(message, detail=detail)
        self.sub_phase = sub_phase

    @property
    def resume_hint(self) -> str:
        return f"--resume-edge-from {self.sub_phase.value}"

    def __str__(self) -> str:
        base = super().__str__()
        return (
            f"{base} Core services are running but public access is not yet configured. "
            f"Fix the cause and rerun with {self.resume_hint} to continue from the failed step."
        )
