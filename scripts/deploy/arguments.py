"""Command-line parsing and validation for ``n8n_deploy``.

Each setting resolves CLI flag -> environment variable -> ``.env.deploy`` in
the repository root -> built-in default. Resolution is pure: the only I/O is
reading ``.env.deploy`` and checking that the SSH key file exists.
"""
from __future__ import annotations

import argparse
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from scripts.deploy.deploy_errors import ConfigurationError
from scripts.deploy.deploy_models import (
    DEFAULT_REMOTE_PATH,
    DEFAULT_SSH_KEY,
    DeployConfig,
    DeploymentTarget,
    EdgeConfig,
    EdgePhase,
    RunMode,
)
from scripts.deploy.preflight import check_credential


ENV_SERVER = "N8N_DEPLOY_SERVER"
ENV_USER = "N8N_DEPLOY_USER"
ENV_SSH_KEY = "N8N_DEPLOY_SSH_KEY"
ENV_REMOTE_PATH = "N8N_DEPLOY_REMOTE_PATH"
ENV_DOMAIN = "N8N_DEPLOY_DOMAIN"
ENV_SSL = "N8N_DEPLOY_SSL"
ENV_SSL_EMAIL = "N8N_DEPLOY_SSL_EMAIL"
ENV_DRY_RUN = "N8N_DEPLOY_DRY_RUN"
ENV_WORKERS = "N8N_DEPLOY_WORKERS"
ENV_LOG_LEVEL = "N8N_DEPLOY_LOG_LEVEL"
ENV_LOG_JSON = "N8N_DEPLOY_LOG_JSON"

DEPLOY_SETTINGS_FILE = ".env.deploy"


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    if not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


def read_deploy_key(*, repo_root: Path, key: str) -> str:
    return read_dotenv_key(dotenv_path=repo_root / DEPLOY_SETTINGS_FILE, key=key)


def parse_boolish(value: str, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deploy n8n (main, worker, postgres, redis) to a Linux server over SSH",
        epilog=(
            "Example (production with TLS): "
            "n8n-deploy --server n8n.example.com --user deploy "
            "--domain n8n.example.com --ssl --email admin@example.com"
        ),
    )
    parser.add_argument("--server", default=None, help=f"Target server hostname or IP. Resolution: CLI -> {ENV_SERVER} -> .env.deploy")
    parser.add_argument("--user", default=None, help=f"SSH username. Resolution: CLI -> {ENV_USER} -> .env.deploy")
    parser.add_argument("--key", default=None, help=f"SSH private key path (default: {DEFAULT_SSH_KEY})")
    parser.add_argument("--remote-path", default=None, help=f"Remote deployment directory (default: {DEFAULT_REMOTE_PATH})")
    parser.add_argument("--domain", default=None, help="Public domain; enables the Nginx reverse proxy")
    parser.add_argument("--ssl", action="store_true", help="Enable TLS with Let's Encrypt (requires --domain and --email)")
    parser.add_argument("--email", default=None, help="Contact email for Let's Encrypt notifications")
    parser.add_argument("--dry-run", action="store_true", help="Show commands without executing them")
    parser.add_argument("--workers", default=None, help="Number of n8n-worker replicas")
    parser.add_argument(
        "--resume-edge-from",
        default=None,
        choices=[phase.value for phase in EdgePhase],
        help="Skip upload and convergence and rerun edge configuration from this phase",
    )
    parser.add_argument("--log-level", default=None, help=f"Log level (default: INFO, env {ENV_LOG_LEVEL})")
    parser.add_argument("--log-json", action="store_true", help="Emit one JSON object per log line")
    return parser


@dataclass
class ResolvedArguments:
    config: DeployConfig
    warnings: list[str] = field(default_factory=list)


class _Resolver:
    def __init__(self, *, repo_root: Path, environ: Mapping[str, str]):
        self._repo_root = repo_root
        self._environ = environ

    def value(self, cli_value: str | None, env_key: str) -> str:
        resolved = str(cli_value or "").strip()
        if not resolved:
            resolved = str(self._environ.get(env_key) or "").strip()
        if not resolved:
            resolved = read_deploy_key(repo_root=self._repo_root, key=env_key)
        return resolved

    def flag(self, cli_value: bool, env_key: str) -> bool:
        if cli_value:
            return True
        return parse_boolish(self.value(None, env_key), default=False)


def resolve_logging(args: argparse.Namespace, *, repo_root: Path, environ: Mapping[str, str] | None = None) -> tuple[str, bool]:
    resolver = _Resolver(repo_root=repo_root, environ=os.environ if environ is None else environ)
    level = resolver.value(args.log_level, ENV_LOG_LEVEL) or "INFO"
    return level, resolver.flag(bool(args.log_json), ENV_LOG_JSON)


def _parse_workers(raw: str) -> int | None:
    if not raw:
        return None
    try:
        workers = int(raw)
    except ValueError:
        raise ConfigurationError(f"--workers must be a positive integer, got {raw!r}", field="workers") from None
    if workers < 1:
        raise ConfigurationError(f"--workers must be a positive integer, got {workers}", field="workers")
    return workers


def resolve_arguments(
    args: argparse.Namespace,
    *,
    repo_root: Path,
    environ: Mapping[str, str] | None = None,
) -> ResolvedArguments:
    resolver = _Resolver(repo_root=repo_root, environ=os.environ if environ is None else environ)
    warnings: list[str] = []

    server = resolver.value(args.server, ENV_SERVER)
    if not server:
        raise ConfigurationError(f"Missing required parameter: --server (or {ENV_SERVER})", field="server")
    user = resolver.value(args.user, ENV_USER)
    if not user:
        raise ConfigurationError(f"Missing required parameter: --user (or {ENV_USER})", field="user")

    domain = resolver.value(args.domain, ENV_DOMAIN)
    ssl_enabled = resolver.flag(bool(args.ssl), ENV_SSL)
    email = resolver.value(args.email, ENV_SSL_EMAIL)

    edge: EdgeConfig | None = None
    if ssl_enabled or domain:
        edge = EdgeConfig(domain=domain, tls_enabled=ssl_enabled, contact_email=email)
    if domain and not ssl_enabled:
        warnings.append(
            "Domain specified without --ssl flag. Nginx will be configured for HTTP only. "
            "For production use, add --ssl to enable HTTPS."
        )
    if email and not ssl_enabled:
        warnings.append("--email is only used with --ssl; ignoring it.")

    workers = _parse_workers(resolver.value(args.workers, ENV_WORKERS))

    resume_from: EdgePhase | None = None
    if args.resume_edge_from:
        resume_from = EdgePhase(args.resume_edge_from)
        if edge is None:
            raise ConfigurationError("--resume-edge-from requires --domain", field="domain")
        if resume_from.requires_tls and not edge.tls_enabled:
            raise ConfigurationError(
                f"--resume-edge-from {resume_from.value} only applies to TLS deployments (add --ssl)",
                field="ssl",
            )

    key_path = Path(os.path.expanduser(resolver.value(args.key, ENV_SSH_KEY) or DEFAULT_SSH_KEY))
    remote_path = resolver.value(args.remote_path, ENV_REMOTE_PATH) or DEFAULT_REMOTE_PATH
    if not remote_path.startswith("/"):
        # Remote commands quote the path, so the remote shell never expands ~ or $HOME.
        raise ConfigurationError(
            f"--remote-path must be an absolute path on the server, got {remote_path!r}",
            field="remote_path",
        )

    mode = RunMode.DRY_RUN if resolver.flag(bool(args.dry_run), ENV_DRY_RUN) else RunMode.EXECUTE

    check_credential(key_path)

    config = DeployConfig(
        target=DeploymentTarget(host=server, user=user, key_path=key_path, remote_path=remote_path),
        repo_root=repo_root,
        edge=edge,
        mode=mode,
        workers=workers,
        resume_edge_from=resume_from,
    )
    return ResolvedArguments(config=config, warnings=warnings)
