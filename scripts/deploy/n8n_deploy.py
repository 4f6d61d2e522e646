#!/usr/bin/env python3
"""Deploy n8n to a Linux server over SSH.

Uploads the compose file, environment and init script, converges the remote
containers with ``docker compose``, optionally puts Nginx and a Let's Encrypt
certificate in front of n8n, and reports service health.

Every step is idempotent, so a failed or interrupted run is fixed by running
it again. ``--dry-run`` prints the remote commands instead of executing them.

Security note: this script shells out to `ssh`, `rsync` and `scp`.
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

if __package__ in (None, ""):
    sys.path.append(str(Path(__file__).resolve().parents[2]))

from scripts.deploy.arguments import build_parser, resolve_arguments, resolve_logging
from scripts.deploy.compose import COMPOSE_FILE, ComposeOrchestrator, ContainerOrchestrator, declared_images, declared_services
from scripts.deploy.converge import RemoteConverger
from scripts.deploy.deploy_errors import DeployError, EdgeConfigurationError, MissingFilesError
from scripts.deploy.deploy_logging import PhaseLogger, configure_logging
from scripts.deploy.deploy_models import DeployConfig, RunResult
from scripts.deploy.edge_config import CertificateIssuer, EdgeConfigurator
from scripts.deploy.file_sync import FileSynchronizer, FileTransfer, RsyncTransfer, ScpTransfer, build_transfer_manifest
from scripts.deploy.health import CONVERGE_SETTLE_SECONDS, HealthVerifier, probe_public_endpoint
from scripts.deploy.preflight import PreflightValidator
from scripts.deploy.remote import DryRunExecutor, RemoteExecutor, SshExecutor


@dataclass
class DeployClients:
    executor: RemoteExecutor
    transfers: list[FileTransfer]
    orchestrator: ContainerOrchestrator
    certificates: CertificateIssuer


def build_clients(config: DeployConfig, logger: PhaseLogger) -> DeployClients:
    remote_logger = logger.for_phase("remote")
    if config.dry_run:
        executor: RemoteExecutor = DryRunExecutor(config.target, remote_logger)
    else:
        executor = SshExecutor(config.target, remote_logger)
    return DeployClients(
        executor=executor,
        transfers=[RsyncTransfer(), ScpTransfer(executor)],
        orchestrator=ComposeOrchestrator(executor=executor, remote_path=config.target.remote_path),
        certificates=CertificateIssuer(executor),
    )


def _log_plan(config: DeployConfig, *, images: list[str], logger: PhaseLogger) -> None:
    target = config.target
    logger.step("Prepared deployment plan")
    logger.info("Server:        %s", target.ssh_destination)
    logger.info("SSH Key:       %s", target.key_path)
    logger.info("Remote Path:   %s", target.remote_path)
    logger.info("Dry Run:       %s", config.dry_run)
    if images:
        logger.info("Images:        %s", ", ".join(images))
    if config.workers:
        logger.info("Workers:       %d", config.workers)
    if config.edge is not None:
        logger.info("Domain:        %s", config.edge.domain)
        logger.info("SSL Enabled:   %s", config.edge.tls_enabled)
        if config.edge.tls_enabled:
            logger.info("SSL Email:     %s", config.edge.contact_email)


def run_deployment(
    config: DeployConfig,
    *,
    clients: DeployClients,
    logger: PhaseLogger,
    warnings: list[str] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> RunResult:
    sleep = sleep or time.sleep
    result = RunResult(warnings=list(warnings or []))
    target = config.target
    compose_path = config.repo_root / COMPOSE_FILE

    manifest = build_transfer_manifest(repo_root=config.repo_root, edge=config.edge)
    _log_plan(config, images=declared_images(compose_path), logger=logger)
    for warning in result.warnings:
        logger.warning(warning)

    PreflightValidator(executor=clients.executor, logger=logger.for_phase("preflight")).run(manifest, target)

    health = HealthVerifier(
        orchestrator=clients.orchestrator,
        services=declared_services(compose_path),
        logger=logger.for_phase("health"),
        dry_run=config.dry_run,
        sleep=sleep,
    )

    if config.resume_edge_from is None:
        synchronizer = FileSynchronizer(
            executor=clients.executor,
            transfers=clients.transfers,
            logger=logger.for_phase("sync"),
        )
        env_overrides = config.edge.env_overrides if config.edge is not None else None
        synchronizer.sync(manifest, target, env_overrides=env_overrides)

        RemoteConverger(orchestrator=clients.orchestrator, logger=logger.for_phase("converge")).converge(
            workers=config.workers,
        )
        result.health_reports.append(health.verify(label="post-converge", settle_seconds=CONVERGE_SETTLE_SECONDS))
    else:
        logger.info("Resuming edge configuration; skipping upload and convergence")

    edge_logger = logger.for_phase("edge")
    if config.edge is None:
        edge_logger.info("No domain supplied; skipping edge configuration")
    else:
        configurator = EdgeConfigurator(
            executor=clients.executor,
            orchestrator=clients.orchestrator,
            certificates=clients.certificates,
            target=target,
            edge=config.edge,
            logger=edge_logger,
            workers=config.workers,
            sleep=sleep,
        )
        result.edge_phases = configurator.run(start_from=config.resume_edge_from)
        result.health_reports.append(health.verify(label="post-edge", settle_seconds=0))
        if config.edge.tls_enabled and not config.dry_run:
            probe_warning = probe_public_endpoint(config.edge.public_url)
            if probe_warning:
                result.warnings.append(probe_warning)

    for report in result.health_reports:
        if report.degraded:
            listing = ", ".join(f"{name} ({status.value})" for name, status in report.degraded.items())
            result.warnings.append(f"Services not healthy after {report.label}: {listing}")
    return result


def _log_summary(config: DeployConfig, result: RunResult, *, logger: PhaseLogger) -> None:
    target = config.target
    ssh = f"ssh -i {target.key_path} {target.ssh_destination}"
    in_dir = f"cd {target.remote_path} &&"

    logger.info("Deployment Complete!")
    logger.info("Location: %s:%s", target.ssh_destination, target.remote_path)
    if config.edge is not None:
        logger.info("Access your n8n instance at: %s", config.edge.public_url)
        if not config.edge.tls_enabled:
            logger.warning("HTTP only. For production, redeploy with --ssl")

    for warning in result.warnings:
        logger.warning(warning)

    logger.info("Useful commands:")
    logger.info("  View logs:    %s '%s docker compose logs -f'", ssh, in_dir)
    logger.info("  Check status: %s '%s docker compose ps'", ssh, in_dir)
    logger.info("  Restart:      %s '%s docker compose restart'", ssh, in_dir)
    logger.info("  Stop:         %s '%s docker compose down'", ssh, in_dir)
    if config.edge is not None and config.edge.tls_enabled:
        logger.info("  Renew SSL:    %s 'sudo certbot renew'", ssh)
        logger.info("  SSL status:   %s 'sudo certbot certificates'", ssh)


def main(argv: list[str] | None = None, repo_root_override: Path | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    repo_root = repo_root_override or Path(__file__).resolve().parents[2]
    level, json_output = resolve_logging(args, repo_root=repo_root)
    logger = configure_logging(level=level, json_output=json_output)

    try:
        resolved = resolve_arguments(args, repo_root=repo_root)
        clients = build_clients(resolved.config, logger)
        result = run_deployment(resolved.config, clients=clients, logger=logger, warnings=resolved.warnings)
    except DeployError as exc:
        extra = {"kind": exc.kind}
        if isinstance(exc, EdgeConfigurationError):
            extra["sub_phase"] = exc.sub_phase.value
        failed = logger.for_phase(exc.phase)
        failed.error("%s", exc, extra=extra)
        if isinstance(exc, MissingFilesError):
            for item in exc.missing:
                failed.error("  - %s", item)
        raise SystemExit(exc.exit_code)

    _log_summary(resolved.config, result, logger=logger)


if __name__ == "__main__":
    main()
