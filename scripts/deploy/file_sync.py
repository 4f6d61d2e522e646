"""Mirror the deployment manifest into the remote directory.

rsync is preferred because it only ships changed byte ranges; scp is the
full-copy fallback when rsync is missing locally or on the host. Mirror
semantics across runs come from a small record of synchronized entries kept
next to the deployed files: anything listed there that has left the manifest
is deleted remotely.
"""
from __future__ import annotations

import posixpath
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path

from scripts.deploy.deploy_errors import TransferError
from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import ENV_FILE, DeploymentTarget, EdgeConfig, ManifestEntry, TransferManifest
from scripts.deploy.remote import RemoteExecutor, describe_failure, ssh_options


CORE_MANIFEST = ("docker-compose.yml", ENV_FILE, "init-data.sh")
NGINX_SETUP_SCRIPT = "scripts/setup-nginx.sh"
SSL_SETUP_SCRIPT = "scripts/setup-ssl.sh"
PROXY_CONFIG_DIR = "nginx"
REMOTE_MANIFEST_FILE = ".deploy-manifest"


class TransferUnavailable(TransferError):
    """The transfer method cannot run in this environment; try the next one."""


def build_transfer_manifest(*, repo_root: Path, edge: EdgeConfig | None) -> TransferManifest:
    paths: list[str] = list(CORE_MANIFEST)
    if edge is not None:
        paths.append(NGINX_SETUP_SCRIPT)
        if edge.tls_enabled:
            paths.append(SSL_SETUP_SCRIPT)
        # Optional override templates; silently left out when absent.
        if (repo_root / PROXY_CONFIG_DIR).is_dir():
            paths.append(PROXY_CONFIG_DIR)

    entries = tuple(ManifestEntry(relative_path=p, is_dir=(repo_root / p).is_dir()) for p in paths)
    return TransferManifest(root=repo_root, entries=entries)


def helper_scripts(manifest: TransferManifest) -> list[str]:
    return [p for p in manifest.relative_paths if p.startswith("scripts/") and p.endswith(".sh")]


def render_env_file(text: str, values: dict[str, str]) -> str:
    """Set each ``KEY=value`` of *values* in a dotenv text, appending keys it lacks."""
    out: list[str] = []
    seen: set[str] = set()
    for line in text.splitlines():
        key = next((k for k in values if line.startswith(f"{k}=")), None)
        if key is None:
            out.append(line)
            continue
        out.append(f"{key}={values[key]}")
        seen.add(key)
    out.extend(f"{key}={value}" for key, value in values.items() if key not in seen)
    return "".join(f"{line}\n" for line in out)


def _ssh_transport(target: DeploymentTarget) -> str:
    return shlex.join(["ssh", *ssh_options(key_path=target.key_path)])


def build_rsync_cmd(*, manifest: TransferManifest, target: DeploymentTarget) -> list[str]:
    # --relative keeps scripts/setup-nginx.sh at <remote>/scripts/setup-nginx.sh.
    dest = f"{target.ssh_destination}:{target.remote_path.rstrip('/')}/"
    return ["rsync", "-az", "--relative", "--delete", "-e", _ssh_transport(target), *manifest.relative_paths, dest]


def remote_entry_path(target: DeploymentTarget, relative_path: str) -> str:
    return posixpath.join(target.remote_path, relative_path)


def build_scp_cmd(*, entry: ManifestEntry, target: DeploymentTarget) -> list[str]:
    parent = posixpath.dirname(remote_entry_path(target, entry.relative_path))
    cmd = ["scp", *ssh_options(key_path=target.key_path)]
    if entry.is_dir:
        cmd.append("-r")
    cmd.extend([entry.relative_path, f"{target.ssh_destination}:{parent}/"])
    return cmd


def _completed_text(completed: subprocess.CompletedProcess) -> str:
    return (str(completed.stderr or "").strip() or str(completed.stdout or "").strip()).strip()


class FileTransfer(ABC):
    name = "transfer"

    @abstractmethod
    def available(self) -> bool:
        """Return True when the method's local tooling is installed."""

    @abstractmethod
    def describe(self, manifest: TransferManifest, target: DeploymentTarget) -> list[str]:
        """Return the commands :meth:`mirror` would run."""

    @abstractmethod
    def mirror(self, manifest: TransferManifest, target: DeploymentTarget) -> None:
        """Make the remote copy of every manifest entry identical to the local one."""


class RsyncTransfer(FileTransfer):
    name = "rsync"

    def available(self) -> bool:
        return shutil.which("rsync") is not None

    def describe(self, manifest: TransferManifest, target: DeploymentTarget) -> list[str]:
        return [shlex.join(build_rsync_cmd(manifest=manifest, target=target))]

    def mirror(self, manifest: TransferManifest, target: DeploymentTarget) -> None:
        cmd = build_rsync_cmd(manifest=manifest, target=target)
        try:
            completed = subprocess.run(cmd, cwd=str(manifest.root), capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise TransferUnavailable("rsync is not installed locally")
        if completed.returncode == 0:
            return
        detail = _completed_text(completed)
        if "command not found" in detail.lower():
            raise TransferUnavailable("rsync is not installed on the remote host", detail=detail)
        raise TransferError(f"rsync failed (exit code {completed.returncode}).", detail=detail)


class ScpTransfer(FileTransfer):
    name = "scp"

    def __init__(self, executor: RemoteExecutor):
        self._executor = executor

    def available(self) -> bool:
        return shutil.which("scp") is not None

    def _prepare_commands(self, entry: ManifestEntry, target: DeploymentTarget) -> list[str]:
        remote_path = remote_entry_path(target, entry.relative_path)
        commands = [f"mkdir -p {shlex.quote(posixpath.dirname(remote_path))}"]
        if entry.is_dir:
            # scp -r merges into an existing directory; start clean to mirror.
            commands.append(f"rm -rf {shlex.quote(remote_path)}")
        return commands

    def describe(self, manifest: TransferManifest, target: DeploymentTarget) -> list[str]:
        out: list[str] = []
        for entry in manifest.entries:
            out.extend(self._prepare_commands(entry, target))
            out.append(shlex.join(build_scp_cmd(entry=entry, target=target)))
        return out

    def mirror(self, manifest: TransferManifest, target: DeploymentTarget) -> None:
        for entry in manifest.entries:
            for command in self._prepare_commands(entry, target):
                result = self._executor.run(command)
                if not result.ok:
                    raise TransferError(describe_failure(result, action=f"Failed to prepare remote path for {entry.relative_path}"))

            cmd = build_scp_cmd(entry=entry, target=target)
            try:
                completed = subprocess.run(cmd, cwd=str(manifest.root), capture_output=True, text=True, check=False)
            except FileNotFoundError:
                raise TransferUnavailable("scp is not installed locally")
            if completed.returncode != 0:
                raise TransferError(
                    f"scp failed for {entry.relative_path} (exit code {completed.returncode}).",
                    detail=_completed_text(completed),
                )


@dataclass
class SyncResult:
    method: str
    removed: list[str] = field(default_factory=list)


def _is_safe_relative(path: str) -> bool:
    if not path or path.startswith("/"):
        return False
    return ".." not in path.split("/")


class FileSynchronizer:
    def __init__(self, *, executor: RemoteExecutor, transfers: list[FileTransfer], logger: PhaseLogger):
        self._executor = executor
        self._transfers = transfers
        self._logger = logger

    def read_previous_entries(self, target: DeploymentTarget) -> list[str]:
        record = remote_entry_path(target, REMOTE_MANIFEST_FILE)
        result = self._executor.run(f"cat {shlex.quote(record)}")
        if not result.ok:
            return []
        return [line.strip() for line in str(result.stdout or "").splitlines() if line.strip()]

    def sync(
        self,
        manifest: TransferManifest,
        target: DeploymentTarget,
        *,
        env_overrides: dict[str, str] | None = None,
    ) -> SyncResult:
        """Mirror *manifest* to the target.

        With *env_overrides* the .env file is uploaded with those keys already set,
        matching what the edge configuration writes remotely.
        """
        self._logger.step("Ensuring remote directory exists: %s", target.remote_path)
        result = self._executor.run(f"mkdir -p {shlex.quote(target.remote_path)}")
        if not result.ok:
            raise TransferError(describe_failure(result, action="Failed to create remote deployment directory"))

        previous = self.read_previous_entries(target)

        self._logger.step("Uploading deployment files to %s:%s", target.host, target.remote_path)
        mirrored = manifest
        staged_env = ""
        if env_overrides and ENV_FILE in manifest.relative_paths:
            mirrored = replace(manifest, entries=tuple(e for e in manifest.entries if e.relative_path != ENV_FILE))
            staged_env = render_env_file((manifest.root / ENV_FILE).read_text(encoding="utf-8"), env_overrides)
        method = self._mirror(mirrored, target)
        if staged_env:
            self._logger.info("Uploading %s with %s set for the public URL", ENV_FILE, ", ".join(env_overrides))
            env_path = remote_entry_path(target, ENV_FILE)
            result = self._executor.run(f"cat > {shlex.quote(env_path)}", input_text=staged_env)
            if not result.ok:
                raise TransferError(describe_failure(result, action=f"Failed to upload {ENV_FILE}"))

        current = set(manifest.relative_paths)
        stale = [p for p in previous if p not in current and _is_safe_relative(p)]
        for relative_path in stale:
            self._logger.info("Removing %s (no longer part of the deployment)", relative_path)
            result = self._executor.run(f"rm -rf {shlex.quote(remote_entry_path(target, relative_path))}")
            if not result.ok:
                raise TransferError(describe_failure(result, action=f"Failed to remove stale remote entry {relative_path}"))

        record = remote_entry_path(target, REMOTE_MANIFEST_FILE)
        content = "".join(f"{p}\n" for p in manifest.relative_paths)
        result = self._executor.run(f"cat > {shlex.quote(record)}", input_text=content)
        if not result.ok:
            raise TransferError(describe_failure(result, action="Failed to record synchronized entries"))

        self._logger.info("Files uploaded via %s", method)
        return SyncResult(method=method, removed=stale)

    def _mirror(self, manifest: TransferManifest, target: DeploymentTarget) -> str:
        candidates = [t for t in self._transfers if t.available()]
        if not candidates:
            names = ", ".join(t.name for t in self._transfers)
            raise TransferError(f"No file transfer method available (tried: {names}).")

        if self._executor.dry_run:
            chosen = candidates[0]
            for command in chosen.describe(manifest, target):
                self._logger.dry_run("%s", command)
            return chosen.name

        reasons: list[str] = []
        for transfer in candidates:
            try:
                transfer.mirror(manifest, target)
                return transfer.name
            except TransferUnavailable as exc:
                self._logger.warning("%s unavailable (%s); falling back", transfer.name, exc)
                reasons.append(f"{transfer.name}: {exc}")
        raise TransferError("All file transfer methods are unavailable.", detail="; ".join(reasons))
