from __future__ import annotations

import re
import shlex
from pathlib import Path

import pytest

from deploy_fakes import FakeExecutor, FakeOrchestrator, FakeTransfer, make_logger, make_target, write_repo
from scripts.deploy import arguments, file_sync, health, n8n_deploy, remote
from scripts.deploy.deploy_errors import ConvergenceError
from scripts.deploy.deploy_models import DeployConfig, EdgeConfig, EdgePhase, RunMode, ServiceHealth
from scripts.deploy.edge_config import CertificateIssuer
from scripts.deploy.file_sync import NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT, render_env_file
from scripts.deploy.n8n_deploy import DeployClients, run_deployment


DOMAIN = "n8n.example.com"
CERTBOT_LISTING = f"  Certificate Name: {DOMAIN}\n    Domains: {DOMAIN}\n"
ENV_KEYS = [
    arguments.ENV_SERVER,
    arguments.ENV_USER,
    arguments.ENV_SSH_KEY,
    arguments.ENV_REMOTE_PATH,
    arguments.ENV_DOMAIN,
    arguments.ENV_SSL,
    arguments.ENV_SSL_EMAIL,
    arguments.ENV_DRY_RUN,
    arguments.ENV_WORKERS,
    arguments.ENV_LOG_LEVEL,
    arguments.ENV_LOG_JSON,
]


@pytest.fixture(autouse=True)
def _clean_deploy_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _clients(*, orchestrator: FakeOrchestrator | None = None, executor: FakeExecutor | None = None):
    executor = executor or FakeExecutor()
    executor.reply("echo SSH_OK", stdout="SSH_OK\n")
    transfer = FakeTransfer("rsync")
    clients = DeployClients(
        executor=executor,
        transfers=[transfer],
        orchestrator=orchestrator or FakeOrchestrator(),
        certificates=CertificateIssuer(executor),
    )
    return clients, executor, transfer


def _config(tmp_path: Path, **overrides) -> DeployConfig:
    values = {"target": make_target(tmp_path), "repo_root": tmp_path}
    values.update(overrides)
    return DeployConfig(**values)


def _no_sleep(_seconds: float) -> None:
    return None


def test_deploy_without_domain_skips_edge_and_reports_core_services(tmp_path: Path):
    write_repo(tmp_path)
    clients, executor, transfer = _clients()

    result = run_deployment(_config(tmp_path), clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert result.edge_phases == []
    assert transfer.mirrored == [["docker-compose.yml", ".env", "init-data.sh"]]
    assert [report.label for report in result.health_reports] == ["post-converge"]
    assert result.health_reports[0].services == {
        "postgres": ServiceHealth.HEALTHY,
        "redis": ServiceHealth.HEALTHY,
        "n8n": ServiceHealth.HEALTHY,
        "n8n-worker": ServiceHealth.HEALTHY,
    }
    assert result.warnings == []
    assert not executor.ran("nginx")


def test_second_deploy_converges_to_same_state(tmp_path: Path):
    write_repo(tmp_path)
    orchestrator = FakeOrchestrator()
    clients, _, _ = _clients(orchestrator=orchestrator)
    config = _config(tmp_path)

    run_deployment(config, clients=clients, logger=make_logger(), sleep=_no_sleep)
    created = orchestrator.created
    running = dict(orchestrator.running)
    run_deployment(config, clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert orchestrator.created == created
    assert orchestrator.running == running


def test_tls_deploy_runs_all_edge_phases(tmp_path: Path, monkeypatch):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT))
    monkeypatch.setattr(n8n_deploy, "probe_public_endpoint", lambda url: "")
    executor = FakeExecutor()
    executor.reply("certbot certificates", stdout=CERTBOT_LISTING)
    orchestrator = FakeOrchestrator()
    clients, _, transfer = _clients(orchestrator=orchestrator, executor=executor)
    edge = EdgeConfig(domain=DOMAIN, tls_enabled=True, contact_email="ops@example.com")

    result = run_deployment(_config(tmp_path, edge=edge), clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert result.edge_phases == list(EdgePhase)
    assert SSL_SETUP_SCRIPT in transfer.mirrored[0]
    assert [report.label for report in result.health_reports] == ["post-converge", "post-edge"]
    assert orchestrator.recreated == [["n8n", "n8n-worker"]]


class _RemoteHost(FakeExecutor):
    """Keeps uploaded files and applies the edge .env rewrite to them."""

    ENV_PATH = "/opt/n8n/.env"

    def __init__(self):
        super().__init__()
        self.files: dict[str, str] = {}

    def run(self, command, *, input_text=None, timeout=None):
        result = super().run(command, input_text=input_text, timeout=timeout)
        if command.startswith("cat > ") and input_text is not None:
            self.files[shlex.split(command)[2]] = input_text
        elif "sed -i" in command and "N8N_PROTOCOL" in command:
            values = dict(shlex.split(line)[0].split("=", 1) for line in re.findall(r"printf '%s\\n' (\S+) >>", command))
            self.files[self.ENV_PATH] = render_env_file(self.files.get(self.ENV_PATH, ""), values)
        return result


class _HostTransfer(FakeTransfer):
    def __init__(self, host: _RemoteHost):
        super().__init__("rsync")
        self._host = host

    def mirror(self, manifest, target):
        super().mirror(manifest, target)
        for entry in manifest.entries:
            local = manifest.root / entry.relative_path
            if local.is_file():
                self._host.files[f"{target.remote_path}/{entry.relative_path}"] = local.read_text(encoding="utf-8")


def test_tls_redeploy_recreates_nothing(tmp_path: Path, monkeypatch):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT))
    monkeypatch.setattr(n8n_deploy, "probe_public_endpoint", lambda url: "")
    host = _RemoteHost()
    host.reply("certbot certificates", stdout=CERTBOT_LISTING)
    host.reply("echo SSH_OK", stdout="SSH_OK\n")
    orchestrator = FakeOrchestrator(env_source=lambda: host.files.get(_RemoteHost.ENV_PATH, ""))
    clients = DeployClients(
        executor=host,
        transfers=[_HostTransfer(host)],
        orchestrator=orchestrator,
        certificates=CertificateIssuer(host),
    )
    edge = EdgeConfig(domain=DOMAIN, tls_enabled=True, contact_email="ops@example.com")
    config = _config(tmp_path, edge=edge)

    run_deployment(config, clients=clients, logger=make_logger(), sleep=_no_sleep)
    created = orchestrator.created
    run_deployment(config, clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert host.files[_RemoteHost.ENV_PATH] == f"N8N_PROTOCOL=https\nN8N_HOST={DOMAIN}\n"
    assert orchestrator.created == created
    assert orchestrator.recreated == [["n8n", "n8n-worker"], ["n8n", "n8n-worker"]]


def test_public_probe_failure_is_a_warning(tmp_path: Path, monkeypatch):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT))
    monkeypatch.setattr(n8n_deploy, "probe_public_endpoint", lambda url: f"Public endpoint {url}/healthz answered HTTP 502")
    executor = FakeExecutor()
    executor.reply("certbot certificates", stdout=CERTBOT_LISTING)
    clients, _, _ = _clients(executor=executor)
    edge = EdgeConfig(domain=DOMAIN, tls_enabled=True, contact_email="ops@example.com")

    result = run_deployment(_config(tmp_path, edge=edge), clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert result.warnings == [f"Public endpoint https://{DOMAIN}/healthz answered HTTP 502"]


def test_resume_skips_sync_and_convergence(tmp_path: Path):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT,))
    orchestrator = FakeOrchestrator()
    clients, executor, transfer = _clients(orchestrator=orchestrator)
    config = _config(tmp_path, edge=EdgeConfig(domain=DOMAIN), resume_edge_from=EdgePhase.PROXY_CONFIGURED)

    result = run_deployment(config, clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert transfer.mirrored == []
    assert "converge" not in orchestrator.calls
    assert result.edge_phases == [EdgePhase.PROXY_CONFIGURED]
    assert not executor.ran("chmod")


def test_unhealthy_services_become_warnings(tmp_path: Path):
    write_repo(tmp_path)
    clients, _, _ = _clients(orchestrator=FakeOrchestrator(health="unhealthy"))

    result = run_deployment(_config(tmp_path), clients=clients, logger=make_logger(), sleep=_no_sleep)

    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("Services not healthy after post-converge")


def test_convergence_failure_stops_before_edge(tmp_path: Path):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT,))
    orchestrator = FakeOrchestrator()
    orchestrator.fail("converge")
    clients, executor, _ = _clients(orchestrator=orchestrator)

    with pytest.raises(ConvergenceError):
        run_deployment(_config(tmp_path, edge=EdgeConfig(domain=DOMAIN)), clients=clients, logger=make_logger(), sleep=_no_sleep)
    assert not executor.ran("setup-nginx.sh")


def test_main_tls_without_email_exits_with_configuration_error(tmp_path: Path, monkeypatch):
    def unexpected(*args, **kwargs):
        raise AssertionError("no clients may be built for an invalid configuration")

    monkeypatch.setattr(n8n_deploy, "build_clients", unexpected)
    with pytest.raises(SystemExit) as excinfo:
        n8n_deploy.main(["--server", "h", "--user", "u", "--domain", DOMAIN, "--ssl"], repo_root_override=tmp_path)
    assert excinfo.value.code == 2


def test_main_missing_credential_exits_with_preflight_code(tmp_path: Path, caplog):
    with caplog.at_level("ERROR", logger="n8n_deploy"):
        with pytest.raises(SystemExit) as excinfo:
            n8n_deploy.main(
                ["--server", "h", "--user", "u", "--key", str(tmp_path / "missing_key")],
                repo_root_override=tmp_path,
            )
    assert excinfo.value.code == 3
    assert any(getattr(record, "kind", None) == "credential_not_found" for record in caplog.records)


def test_main_missing_files_lists_them(tmp_path: Path, monkeypatch, caplog):
    key = tmp_path / "id_ed25519"
    key.write_text("key", encoding="utf-8")
    with caplog.at_level("ERROR", logger="n8n_deploy"):
        with pytest.raises(SystemExit) as excinfo:
            n8n_deploy.main(["--server", "h", "--user", "u", "--key", str(key), "--dry-run"], repo_root_override=tmp_path)
    assert excinfo.value.code == 3
    messages = [record.getMessage() for record in caplog.records]
    assert "  - docker-compose.yml" in messages


def test_dry_run_invokes_no_external_process(tmp_path: Path, monkeypatch, caplog):
    write_repo(tmp_path, extra=(NGINX_SETUP_SCRIPT, SSL_SETUP_SCRIPT))
    key = tmp_path / "id_ed25519"
    key.write_text("key", encoding="utf-8")

    def forbidden(*args, **kwargs):
        raise AssertionError("dry-run must not run external commands")

    monkeypatch.setattr(remote.subprocess, "run", forbidden)
    monkeypatch.setattr(file_sync.subprocess, "run", forbidden)
    monkeypatch.setattr(file_sync.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(health.requests, "get", forbidden)
    monkeypatch.setattr(n8n_deploy.time, "sleep", forbidden)

    with caplog.at_level("INFO", logger="n8n_deploy"):
        n8n_deploy.main(
            [
                "--server", "h",
                "--user", "u",
                "--key", str(key),
                "--domain", DOMAIN,
                "--ssl",
                "--email", "ops@example.com",
                "--dry-run",
            ],
            repo_root_override=tmp_path,
        )

    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("[dry-run] rsync -az --relative --delete") for message in messages)
    assert any("certbot --nginx" in message for message in messages)
    assert "Deployment Complete!" in messages


def test_build_clients_picks_executor_for_mode(tmp_path: Path):
    logger = make_logger()
    dry = n8n_deploy.build_clients(_config(tmp_path, mode=RunMode.DRY_RUN), logger)
    live = n8n_deploy.build_clients(_config(tmp_path), logger)
    assert isinstance(dry.executor, remote.DryRunExecutor)
    assert isinstance(live.executor, remote.SshExecutor)
    assert [t.name for t in live.transfers] == ["rsync", "scp"]
