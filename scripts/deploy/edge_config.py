"""Reverse proxy and TLS setup in front of n8n.

Runs only when a public domain is configured. The phases form a linear state
machine; a failing phase stops the whole deployment and reports the phase so
the operator can rerun with ``--resume-edge-from <phase>``. Every phase is
safe to repeat.
"""
from __future__ import annotations

import re
import shlex
import time
from typing import Callable

from scripts.deploy.compose import ContainerOrchestrator
from scripts.deploy.deploy_errors import EdgeConfigurationError
from scripts.deploy.deploy_logging import PhaseLogger
from scripts.deploy.deploy_models import (
    ENV_FILE,
    MAIN_SERVICE,
    WORKER_SERVICE,
    CommandResult,
    DeploymentTarget,
    EdgeConfig,
    EdgePhase,
)
from scripts.deploy.file_sync import NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT
from scripts.deploy.health import RESTART_SETTLE_SECONDS
from scripts.deploy.remote import RemoteExecutor, describe_failure, in_remote_dir


RENEWAL_CRON = "0 3 * * * certbot renew --nginx --quiet && systemctl reload nginx"

_CERT_DOMAINS_PATTERN = re.compile(r"^\s*Domains:\s*(.+)$", re.MULTILINE)


def build_chmod_cmd(*, remote_path: str, scripts: list[str]) -> str:
    quoted = " ".join(shlex.quote(s) for s in scripts)
    return in_remote_dir(remote_path, f"chmod +x {quoted}")


def build_nginx_setup_cmd(*, remote_path: str, domain: str) -> str:
    return in_remote_dir(
        remote_path,
        f"sudo ./{NGINX_SETUP_SCRIPT} --domain {shlex.quote(domain)} --deployment-dir {shlex.quote(remote_path)}",
    )


def build_ssl_prereq_cmd(*, remote_path: str, domain: str, email: str) -> str:
    return in_remote_dir(
        remote_path,
        f"sudo ./{SSL_SETUP_SCRIPT} --domain {shlex.quote(domain)} --email {shlex.quote(email)}",
    )


def build_env_rewrite_cmd(*, remote_path: str, values: dict[str, str]) -> str:
    """Rewrite ``KEY=value`` lines of the remote .env in place, appending missing keys."""
    parts: list[str] = []
    env_file = shlex.quote(ENV_FILE)
    for key, value in values.items():
        line = f"{key}={value}"
        sed_expr = shlex.quote(f"s|^{key}=.*|{line}|")
        parts.append(
            f"if grep -q {shlex.quote('^' + key + '=')} {env_file}; "
            f"then sed -i {sed_expr} {env_file}; "
            f"else printf '%s\\n' {shlex.quote(line)} >> {env_file}; fi"
        )
    return in_remote_dir(remote_path, " && ".join(f"({part})" for part in parts))


def parse_certificate_domains(output: str) -> list[str]:
    domains: list[str] = []
    for match in _CERT_DOMAINS_PATTERN.finditer(str(output or "")):
        for domain in match.group(1).split():
            if domain not in domains:
                domains.append(domain)
    return domains


class CertificateIssuer:
    """Thin client for the remote certbot CLI."""

    def __init__(self, executor: RemoteExecutor):
        self._executor = executor

    def list_domains(self) -> list[str]:
        result = self._executor.run("sudo certbot certificates")
        if not result.ok:
            return []
        return parse_certificate_domains(result.stdout)

    def obtain_or_renew(self, *, domain: str, email: str) -> CommandResult:
        if domain in self.list_domains():
            # Renews only when due but always reinstalls the cert and redirect into nginx,
            # which setup-nginx.sh may have reset.
            return self._executor.run(
                "sudo certbot --nginx --non-interactive --keep-until-expiring --redirect "
                f"--cert-name {shlex.quote(domain)} --domain {shlex.quote(domain)}"
            )
        return self._executor.run(
            "sudo certbot --nginx --non-interactive --agree-tos --redirect "
            f"--email {shlex.quote(email)} --domain {shlex.quote(domain)}"
        )

    def renewal_scheduled(self) -> bool:
        timer = self._executor.run("systemctl list-timers --all 2>/dev/null | grep -q certbot")
        if timer.ok:
            return True
        cron = self._executor.run("sudo crontab -l 2>/dev/null | grep -q 'certbot renew'")
        return cron.ok

    def install_renewal_cron(self) -> CommandResult:
        script = f"(crontab -l 2>/dev/null | grep -v 'certbot renew'; echo {shlex.quote(RENEWAL_CRON)}) | crontab -"
        return self._executor.run(f"sudo sh -c {shlex.quote(script)}")


class EdgeConfigurator:
    def __init__(
        self,
        *,
        executor: RemoteExecutor,
        orchestrator: ContainerOrchestrator,
        certificates: CertificateIssuer,
        target: DeploymentTarget,
        edge: EdgeConfig,
        logger: PhaseLogger,
        workers: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        restart_settle_seconds: int = RESTART_SETTLE_SECONDS,
    ):
        self._executor = executor
        self._orchestrator = orchestrator
        self._certificates = certificates
        self._target = target
        self._edge = edge
        self._logger = logger
        self._workers = workers
        self._sleep = sleep
        self._restart_settle_seconds = restart_settle_seconds

    def phases(self) -> list[EdgePhase]:
        return [phase for phase in EdgePhase if self._edge.tls_enabled or not phase.requires_tls]

    def run(self, *, start_from: EdgePhase | None = None) -> list[EdgePhase]:
        handlers: dict[EdgePhase, Callable[[], None]] = {
            EdgePhase.SCRIPTS_STAGED: self._stage_scripts,
            EdgePhase.PROXY_CONFIGURED: self._configure_proxy,
            EdgePhase.CERTIFICATE_OBTAINED: self._obtain_certificate,
            EdgePhase.ENVIRONMENT_UPDATED: self._update_environment,
            EdgePhase.SERVICES_RESTARTED: self._restart_services,
        }
        phases = self.phases()
        if start_from is not None:
            phases = phases[phases.index(start_from):]
            self._logger.info("Resuming edge configuration at %s", start_from.value)

        completed: list[EdgePhase] = []
        for phase in phases:
            handlers[phase]()
            completed.append(phase)
            self._logger.info("Edge phase %s complete", phase.value, extra={"sub_phase": phase.value})
        return completed

    def _fail(self, phase: EdgePhase, result: CommandResult, *, action: str) -> None:
        raise EdgeConfigurationError(describe_failure(result, action=action), sub_phase=phase)

    def _scripts(self) -> list[str]:
        scripts = [NGINX_SETUP_SCRIPT]
        if self._edge.tls_enabled:
            scripts.append(SSL_SETUP_SCRIPT)
        return scripts

    def _stage_scripts(self) -> None:
        self._logger.step("Staging proxy/TLS helper scripts")
        result = self._executor.run(build_chmod_cmd(remote_path=self._target.remote_path, scripts=self._scripts()))
        if not result.ok:
            self._fail(EdgePhase.SCRIPTS_STAGED, result, action="Failed to mark helper scripts executable")

    def _configure_proxy(self) -> None:
        phase = EdgePhase.PROXY_CONFIGURED
        self._logger.step("Configuring Nginx reverse proxy for %s (this may take a few minutes)", self._edge.domain)
        result = self._executor.run(build_nginx_setup_cmd(remote_path=self._target.remote_path, domain=self._edge.domain))
        if not result.ok:
            self._fail(phase, result, action=f"Nginx setup failed; check {self._target.remote_path}/{NGINX_SETUP_SCRIPT}")

        result = self._executor.run("sudo nginx -t")
        if not result.ok:
            self._fail(phase, result, action="Nginx configuration test failed")
        self._logger.info("Nginx configured successfully")

    def _obtain_certificate(self) -> None:
        phase = EdgePhase.CERTIFICATE_OBTAINED
        domain = self._edge.domain
        self._logger.step("Obtaining TLS certificate for %s", domain)
        result = self._executor.run(
            build_ssl_prereq_cmd(remote_path=self._target.remote_path, domain=domain, email=self._edge.contact_email)
        )
        if not result.ok:
            self._fail(phase, result, action="TLS prerequisites check failed (certbot, DNS or nginx)")

        result = self._certificates.obtain_or_renew(domain=domain, email=self._edge.contact_email)
        if not result.ok:
            self._fail(phase, result, action=f"certbot could not obtain a certificate for {domain}")

        if self._executor.dry_run:
            return

        if domain not in self._certificates.list_domains():
            raise EdgeConfigurationError(
                f"certbot reported success but no certificate for {domain} is installed.",
                sub_phase=phase,
            )

        if self._certificates.renewal_scheduled():
            self._logger.info("Certbot auto-renewal is active")
            return
        self._logger.info("Setting up cron job for certificate renewal")
        result = self._certificates.install_renewal_cron()
        if not result.ok:
            self._fail(phase, result, action="Failed to install the certificate renewal cron job")

    def _update_environment(self) -> None:
        self._logger.step("Updating %s with production HTTPS URL", ENV_FILE)
        cmd = build_env_rewrite_cmd(
            remote_path=self._target.remote_path,
            values=self._edge.env_overrides,
        )
        result = self._executor.run(cmd)
        if not result.ok:
            self._fail(EdgePhase.ENVIRONMENT_UPDATED, result, action=f"Failed to update {ENV_FILE}")

    def _restart_services(self) -> None:
        self._logger.step("Re-creating n8n services to apply configuration")
        scale = {WORKER_SERVICE: self._workers} if self._workers else None
        result = self._orchestrator.recreate([MAIN_SERVICE, WORKER_SERVICE], scale=scale)
        if not result.ok:
            self._fail(EdgePhase.SERVICES_RESTARTED, result, action="docker compose up (re-create n8n services) failed")
        if self._restart_settle_seconds <= 0:
            return
        if self._executor.dry_run:
            self._logger.dry_run("wait %ds for services to restart", self._restart_settle_seconds)
            return
        self._sleep(self._restart_settle_seconds)
