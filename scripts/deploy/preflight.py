from __future__ import annotations

from pathlib import Path

from scripts.deploy.deploy_errors import CredentialNotFoundError, MissingFilesError, RemoteUnreachableError
from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import DeploymentTarget, TransferManifest
from scripts.deploy.remote import PROBE_TIMEOUT_SECONDS, RemoteExecutor, ssh_failure_hint


PROBE_COMMAND = "echo SSH_OK"
PROBE_MARKER = "SSH_OK"


def check_credential(key_path: Path) -> None:
    if not key_path.is_file():
        raise CredentialNotFoundError(str(key_path))


def missing_manifest_entries(manifest: TransferManifest) -> list[str]:
    return [p for p in manifest.relative_paths if not (manifest.root / p).exists()]


class PreflightValidator:
    def __init__(self, *, executor: RemoteExecutor, logger: PhaseLogger):
        self._executor = executor
        self._logger = logger

    def check_local(self, manifest: TransferManifest) -> None:
        self._logger.step("Verifying local deployment files")
        missing = missing_manifest_entries(manifest)
        if missing:
            raise MissingFilesError(missing)
        self._logger.info("All required files present")

    def check_remote(self, target: DeploymentTarget) -> None:
        self._logger.step("Testing SSH connectivity to %s", target.ssh_destination)
        if self._executor.dry_run:
            self._logger.dry_run("ssh %s %s (connectivity probe skipped)", target.ssh_destination, PROBE_COMMAND)
            return

        result = self._executor.run(PROBE_COMMAND, timeout=PROBE_TIMEOUT_SECONDS)
        if result.ok and PROBE_MARKER in str(result.stdout or ""):
            self._logger.info("SSH connectivity verified")
            return

        detail = result.text
        message = f"Cannot establish SSH connection to {target.ssh_destination}."
        hint = ssh_failure_hint(detail)
        if hint:
            message = f"{message} {hint}"
        else:
            message = f"{message} Verify the server is reachable, the key is authorized and the user exists."
        raise RemoteUnreachableError(message, detail=detail)

    def run(self, manifest: TransferManifest, target: DeploymentTarget) -> None:
        self.check_local(manifest)
        self.check_remote(target)
