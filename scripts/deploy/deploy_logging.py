"""Phase-tagged logging for the deployer.

Components receive a :class:`PhaseLogger` rather than printing. Every record
carries the pipeline phase that emitted it so a failed run can be resumed from
the log alone.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import Any


LOGGER_NAME = "n8n_deploy"
LOG_PREFIX = "[n8n-deploy]"


class PhaseLogger(logging.LoggerAdapter):
    def __init__(self, logger: logging.Logger, phase: str = "deploy", *, _steps: list[int] | None = None):
        super().__init__(logger, {"phase": phase})
        # Shared across for_phase() children so step numbers stay global.
        self._steps = _steps if _steps is not None else [0]

    @property
    def phase(self) -> str:
        return str(self.extra["phase"])

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("phase", self.phase)
        kwargs["extra"] = extra
        return msg, kwargs

    def for_phase(self, phase: str) -> "PhaseLogger":
        return PhaseLogger(self.logger, phase, _steps=self._steps)

    def step(self, message: str, *args: Any) -> None:
        self._steps[0] += 1
        self.info(f"Step {self._steps[0]}: {message}", *args)

    def dry_run(self, message: str, *args: Any) -> None:
        self.info(f"[dry-run] {message}", *args)


class PhaseFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        phase = getattr(record, "phase", "-")
        line = f"{LOG_PREFIX} {phase} {record.levelname}: {record.getMessage()}"
        kind = getattr(record, "kind", None)
        if kind:
            line = f"{line} (kind={kind})"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "phase": getattr(record, "phase", None),
            "message": record.getMessage(),
        }
        for key in ("kind", "sub_phase", "service", "status"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, sort_keys=False)


def configure_logging(*, level: str = "INFO", json_output: bool = False) -> PhaseLogger:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else PhaseFormatter())
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level or "INFO").upper(), logging.INFO))
    return PhaseLogger(logger)
