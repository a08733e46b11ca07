"""
Structured logging for the knowledge engine.

Every record carries the request id and tenant id of the work that produced
it. Both live in contextvars, so they follow a search onto the semantic
thread pool (the retriever copies the context on submit).
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.config
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import yaml
from prometheus_client import REGISTRY, Counter

from .core.config import Settings

UNBOUND = "-"

_CONTEXT: Dict[str, contextvars.ContextVar] = {
    "request_id": contextvars.ContextVar("request_id", default=UNBOUND),
    "tenant_id": contextvars.ContextVar("tenant_id", default=UNBOUND),
}

# Attributes every LogRecord has; anything else arrived through extra=.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "error_code",
    *_CONTEXT,
}


def _error_counter() -> Counter:
    # Re-importing the module (uvicorn --reload, test collection) must not
    # register the collector twice.
    existing = getattr(REGISTRY, "_names_to_collectors", {}).get("knowledge_log_errors_total")
    if existing is not None:
        return existing  # type: ignore[return-value]
    return Counter(
        "knowledge_log_errors",
        "Log records at ERROR level or above",
        ["logger", "level"],
    )


LOG_ERROR_COUNTER = _error_counter()


def bind_request_context(request_id: Optional[str] = None) -> None:
    if request_id:
        _CONTEXT["request_id"].set(request_id)


def bind_tenant_context(tenant_id: Optional[str]) -> None:
    if tenant_id:
        _CONTEXT["tenant_id"].set(tenant_id)


@contextmanager
def tenant_context(tenant_id: Optional[str]) -> Iterator[None]:
    """Bind tenant_id for the duration of a block, restoring the previous value."""
    token = _CONTEXT["tenant_id"].set(tenant_id or UNBOUND)
    try:
        yield
    finally:
        _CONTEXT["tenant_id"].reset(token)


def clear_context() -> None:
    for var in _CONTEXT.values():
        var.set(UNBOUND)


def current_context() -> Dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT.items()}


class ContextFilter(logging.Filter):
    """Copy the bound request and tenant ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT.items():
            # extra={"tenant_id": ...} on the call site wins over the context
            if not getattr(record, name, None):
                setattr(record, name, var.get())
        if not hasattr(record, "error_code"):
            record.error_code = ""
        return True


class PIIRedactingFilter(logging.Filter):
    """Mask API keys, bearer tokens and e-mail addresses in messages and errors."""

    PATTERNS: Tuple[re.Pattern[str], ...] = (
        re.compile(r"\bsk-[A-Za-z0-9_\-]{10,}"),
        re.compile(r"\bbearer\s+[A-Za-z0-9._\-]{10,}", re.IGNORECASE),
        re.compile(r"[\w.%+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}"),
    )
    MASK = "[REDACTED]"

    @classmethod
    def redact(cls, value: Any) -> Any:
        if isinstance(value, str):
            for pattern in cls.PATTERNS:
                value = pattern.sub(cls.MASK, value)
            return value
        if isinstance(value, dict):
            return {key: cls.redact(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(cls.redact(item) for item in value)
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(record.msg)
        if record.args:
            record.args = self.redact(record.args)
        if hasattr(record, "error"):
            record.error = self.redact(record.error)
        return True


class PrometheusErrorHandler(logging.Handler):
    """Counts ERROR+ records per logger; emits nothing itself."""

    def __init__(self, level: int = logging.ERROR) -> None:
        super().__init__(level)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            LOG_ERROR_COUNTER.labels(logger=record.name, level=record.levelname).inc()
        except Exception:  # pragma: no cover
            self.handleError(record)


def serialize_log_record(record: logging.LogRecord) -> str:
    """One JSON object: level, logger, message, bound context and extra= fields."""
    payload: Dict[str, Any] = {
        "timestamp": record.created,
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
        "context": {name: getattr(record, name, var.get()) for name, var in _CONTEXT.items()},
    }
    fields = {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS}
    if fields:
        payload["fields"] = fields
    if record.exc_info:
        payload["exception"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(payload, ensure_ascii=False, default=str)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return serialize_log_record(record)


def setup_logging(settings: Settings) -> None:
    """
    Configure logging from logging.yaml.

    Development gets human-readable console output; every other environment
    gets JSON lines, plus a rotating file under ``settings.log_dir`` when file
    logging is enabled.
    """
    config_path = Path(settings.log_config_path or Path(__file__).with_name("logging.yaml"))
    if not config_path.exists():
        raise FileNotFoundError(f"Logging configuration not found at {config_path}")
    config: Dict[str, Any] = yaml.safe_load(config_path.read_text(encoding="utf-8"))

    level = settings.log_level.upper()
    development = settings.environment.lower() == "development"
    stream = "console" if development or not settings.enable_json_logs else "json"
    handlers = config.setdefault("handlers", {})

    engine_handlers = [stream, "error_metrics"]
    if not development and settings.enable_file_logging and "file" in handlers:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handlers["file"]["filename"] = str(settings.log_dir / "knowledge_engine.log")
        engine_handlers.append("file")
    else:
        # dictConfig opens every declared handler, including unused files
        handlers.pop("file", None)

    for name in ("console", "json"):
        if name in handlers:
            handlers[name]["level"] = level

    config["root"]["handlers"] = [stream]
    config.setdefault("loggers", {})["knowledge_engine"] = {
        "handlers": engine_handlers,
        "level": level,
        "propagate": False,
    }
    logging.config.dictConfig(config)


__all__ = [
    "UNBOUND",
    "bind_request_context",
    "bind_tenant_context",
    "tenant_context",
    "clear_context",
    "current_context",
    "ContextFilter",
    "PIIRedactingFilter",
    "PrometheusErrorHandler",
    "JsonFormatter",
    "serialize_log_record",
    "setup_logging",
]
