"""Remote command execution over SSH.

:class:`SshExecutor` shells out to the local ``ssh`` client. Components talk
to the :class:`RemoteExecutor` interface only, so dry-run swaps in
:class:`DryRunExecutor` and tests swap in fakes.
"""
from __future__ import annotations

import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import CommandResult, DeploymentTarget


SSH_CONNECT_TIMEOUT_SECONDS = 10
SSH_FAILURE_EXIT_CODE = 255
PROBE_TIMEOUT_SECONDS = 15


def ssh_options(*, key_path: Path) -> list[str]:
    return [
        "-i", str(key_path),
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT_SECONDS}",
    ]


def build_ssh_cmd(*, target: DeploymentTarget, remote_command: str) -> list[str]:
    return ["ssh", *ssh_options(key_path=target.key_path), target.ssh_destination, remote_command]


def in_remote_dir(remote_path: str, command: str) -> str:
    return f"cd {shlex.quote(remote_path)} && {command}"


def ssh_failure_hint(error_text: str) -> str:
    lowered = error_text.lower()
    if "no route to host" in lowered:
        return "No route to host. Check VPN/LAN reachability and the --server value."
    if "connection timed out" in lowered or "timed out" in lowered:
        return "SSH timed out. Verify the server is online and port 22 is reachable."
    if "connection refused" in lowered:
        return "SSH connection refused. Confirm the SSH daemon is running and port 22 is open."
    if "permission denied" in lowered:
        return "SSH authentication failed. Verify the key is authorized for the configured user."
    if "could not resolve hostname" in lowered:
        return "Host resolution failed. Check --server for typos/DNS issues."
    return ""


def describe_failure(result: CommandResult, *, action: str) -> str:
    message = f"{action} (exit code {result.returncode})."
    detail = result.text
    if detail:
        message = f"{message} {detail}"
    if result.returncode == SSH_FAILURE_EXIT_CODE:
        hint = ssh_failure_hint(detail)
        if hint:
            message = f"{message} {hint}"
    return message


class RemoteExecutor(ABC):
    dry_run = False

    @abstractmethod
    def run(self, command: str, *, input_text: str | None = None, timeout: float | None = None) -> CommandResult:
        """Run *command* on the remote host and return its outcome; never raises on a non-zero exit."""


class SshExecutor(RemoteExecutor):
    def __init__(self, target: DeploymentTarget, logger: PhaseLogger):
        self._target = target
        self._logger = logger

    def run(self, command: str, *, input_text: str | None = None, timeout: float | None = None) -> CommandResult:
        cmd = build_ssh_cmd(target=self._target, remote_command=command)
        self._logger.debug("ssh %s %s", self._target.ssh_destination, command)
        try:
            completed = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(command=command, returncode=124, stderr=f"Command timed out after {timeout}s")
        except FileNotFoundError:
            return CommandResult(command=command, returncode=127, stderr="ssh client not found on PATH")
        return CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        )


class DryRunExecutor(RemoteExecutor):
    dry_run = True

    def __init__(self, target: DeploymentTarget, logger: PhaseLogger):
        self._target = target
        self._logger = logger
        self.commands: list[str] = []

    def run(self, command: str, *, input_text: str | None = None, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        self._logger.dry_run("ssh %s %s", self._target.ssh_destination, command)
        return CommandResult(command=command, returncode=0)
