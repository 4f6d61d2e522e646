import json
import logging

from scripts.deploy.deploy_errors import ConfigurationError, EdgeConfigurationError, TransferError
from scripts.deploy.deploy_logging import JsonFormatter, PhaseFormatter, PhaseLogger
from scripts.deploy.deploy_models import EdgePhase


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("n8n_deploy", logging.ERROR, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_phase_formatter_includes_prefix_phase_and_kind():
    line = PhaseFormatter().format(_record("Missing required files: .env", phase="preflight", kind="missing_files"))
    assert line == "[n8n-deploy] preflight ERROR: Missing required files: .env (kind=missing_files)"


def test_json_formatter_emits_structured_fields():
    payload = json.loads(
        JsonFormatter().format(_record("certbot failed", phase="edge", kind="edge_configuration", sub_phase="certificate_obtained"))
    )
    assert payload["level"] == "ERROR"
    assert payload["phase"] == "edge"
    assert payload["message"] == "certbot failed"
    assert payload["kind"] == "edge_configuration"
    assert payload["sub_phase"] == "certificate_obtained"
    assert "service" not in payload


def test_child_loggers_share_step_counter(caplog):
    logger = logging.getLogger("n8n_deploy")
    root = PhaseLogger(logger)
    with caplog.at_level("INFO", logger="n8n_deploy"):
        root.step("plan")
        root.for_phase("sync").step("upload")
    messages = [(getattr(r, "phase", None), r.getMessage()) for r in caplog.records]
    assert messages == [("deploy", "Step 1: plan"), ("sync", "Step 2: upload")]


def test_error_exit_codes():
    assert ConfigurationError("x").exit_code == 2
    assert TransferError("x").exit_code == 4
    err = EdgeConfigurationError("boom", sub_phase=EdgePhase.CERTIFICATE_OBTAINED)
    assert err.phase == "edge"
    assert "--resume-edge-from certificate_obtained" in str(err)
