from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from scripts.deploy.deploy_errors import ConfigurationError


DEFAULT_SSH_KEY = "~/.ssh/id_ed25519"
DEFAULT_REMOTE_PATH = "/opt/n8n"

MAIN_SERVICE = "n8n"
WORKER_SERVICE = "n8n-worker"
CORE_SERVICES = (MAIN_SERVICE, WORKER_SERVICE, "postgres", "redis")

ENV_FILE = ".env"
ENV_PROTOCOL_KEY = "N8N_PROTOCOL"
ENV_HOST_KEY = "N8N_HOST"


class RunMode(str, Enum):
    EXECUTE = "execute"
    DRY_RUN = "dry-run"


class ServiceHealth(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    ABSENT = "absent"


class EdgePhase(str, Enum):
    SCRIPTS_STAGED = "scripts_staged"
    PROXY_CONFIGURED = "proxy_configured"
    CERTIFICATE_OBTAINED = "certificate_obtained"
    ENVIRONMENT_UPDATED = "environment_updated"
    SERVICES_RESTARTED = "services_restarted"

    @property
    def requires_tls(self) -> bool:
        return self in {
            EdgePhase.CERTIFICATE_OBTAINED,
            EdgePhase.ENVIRONMENT_UPDATED,
            EdgePhase.SERVICES_RESTARTED,
        }


@dataclass(frozen=True)
class DeploymentTarget:
    host: str
    user: str
    key_path: Path
    remote_path: str = DEFAULT_REMOTE_PATH

    @property
    def ssh_destination(self) -> str:
        return f"{self.user}@{self.host}"


@dataclass(frozen=True)
class EdgeConfig:
    domain: str
    tls_enabled: bool = False
    contact_email: str = ""

    def __post_init__(self) -> None:
        if not self.tls_enabled:
            return
        if not self.domain.strip():
            raise ConfigurationError("--ssl requires --domain to be specified", field="domain")
        if not self.contact_email.strip():
            raise ConfigurationError(
                "--ssl requires --email to be specified for Let's Encrypt notifications",
                field="email",
            )

    @property
    def public_url(self) -> str:
        scheme = "https" if self.tls_enabled else "http"
        return f"{scheme}://{self.domain}"

    @property
    def env_overrides(self) -> dict[str, str]:
        """Keys of the remote .env that TLS deployments pin to the public HTTPS URL."""
        if not self.tls_enabled:
            return {}
        return {ENV_PROTOCOL_KEY: "https", ENV_HOST_KEY: self.domain}


@dataclass(frozen=True)
class ManifestEntry:
    relative_path: str
    is_dir: bool = False


@dataclass(frozen=True)
class TransferManifest:
    root: Path
    entries: tuple[ManifestEntry, ...]

    @property
    def relative_paths(self) -> list[str]:
        return [entry.relative_path for entry in self.entries]


@dataclass(frozen=True)
class CommandResult:
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return (str(self.stderr or "").strip() or str(self.stdout or "").strip()).strip()


@dataclass
class ServiceHealthReport:
    label: str
    services: dict[str, ServiceHealth]
    observed: bool = True

    @property
    def degraded(self) -> dict[str, ServiceHealth]:
        if not self.observed:
            return {}
        return {name: status for name, status in self.services.items() if status is not ServiceHealth.HEALTHY}


@dataclass(frozen=True)
class DeployConfig:
    target: DeploymentTarget
    repo_root: Path
    edge: EdgeConfig | None = None
    mode: RunMode = RunMode.EXECUTE
    workers: int | None = None
    resume_edge_from: EdgePhase | None = None

    @property
    def dry_run(self) -> bool:
        return self.mode is RunMode.DRY_RUN


@dataclass
class RunResult:
    health_reports: list[ServiceHealthReport] = field(default_factory=list)
    edge_phases: list[EdgePhase] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
