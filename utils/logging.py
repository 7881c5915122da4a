"""Structured JSON logging for the ERD deployment service.

This module provides:
- JSON-formatted log output for production environments
- Pipeline context via ContextVar (request_id, deployment_id, rollback_id)
- Human-readable format for development
"""

import json
import logging
import os
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

# Context variables for pipeline tracing
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
deployment_id_var: ContextVar[str | None] = ContextVar("deployment_id", default=None)
rollback_id_var: ContextVar[str | None] = ContextVar("rollback_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "request_id": request_id_var,
    "deployment_id": deployment_id_var,
    "rollback_id": rollback_id_var,
}

# LogRecord attributes that are not user-supplied extras
_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def get_log_context() -> dict[str, str]:
    """Return the context values that are currently set."""
    return {
        name: value
        for name, var in _CONTEXT_VARS.items()
        if (value := var.get()) is not None
    }


def set_log_context(
    request_id: str | None = None,
    deployment_id: str | None = None,
    rollback_id: str | None = None,
):
    """Set pipeline context variables."""
    if request_id is not None:
        request_id_var.set(request_id)
    if deployment_id is not None:
        deployment_id_var.set(deployment_id)
    if rollback_id is not None:
        rollback_id_var.set(rollback_id)


def clear_log_context():
    """Clear all pipeline context variables."""
    for var in _CONTEXT_VARS.values():
        var.set(None)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-01-29T12:34:56.789Z",
        "level": "INFO",
        "logger": "services.deployment_orchestrator",
        "message": "Step publisher completed",
        "deployment_id": "deploy_1769690096789_1a2b3c4d",
        "extra": {...}
    }
    """

    def __init__(self, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.service_name:
            log_data["service"] = self.service_name

        log_data.update(get_log_context())

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
            log_data["exception_type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )

        # These come from logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter for development.

    Output format:
    2026-01-29 12:34:56.789 | INFO     | module.name | [deploy_17...] Log message here
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level = record.levelname.ljust(8)
        message = record.getMessage()

        context = get_log_context()
        pipeline_id = context.get("rollback_id") or context.get("deployment_id")
        if pipeline_id is None:
            pipeline_id = context.get("request_id")
        prefix = f"[{pipeline_id[:20]}] " if pipeline_id else ""

        formatted = f"{timestamp} | {level} | {record.name} | {prefix}{message}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service_name: str = "erd-deploy-api",
):
    """Configure the root logger with structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format. If None, auto-detect from environment.
        service_name: Service name for log identification
    """
    if json_format is None:
        # JSON unless DEBUG is set
        debug_mode = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
        json_format = not debug_mode

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(HumanReadableFormatter())
    root_logger.addHandler(handler)

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the module.

    Relies on configure_logging() being called at startup; falls back to a
    default configuration when nothing has configured the root logger yet.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers:
        configure_logging()
    return logger


class LogContext:
    """Context manager for setting pipeline context.

    Usage:
        async with LogContext(deployment_id="deploy_123"):
            logger.info("This log will include the deployment id")
    """

    def __init__(
        self,
        request_id: str | None = None,
        deployment_id: str | None = None,
        rollback_id: str | None = None,
    ):
        self._values = {
            "request_id": request_id,
            "deployment_id": deployment_id,
            "rollback_id": rollback_id,
        }
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self):
        for name, value in self._values.items():
            if value:
                var = _CONTEXT_VARS[name]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # Restore previous values so nested contexts unwind correctly
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
