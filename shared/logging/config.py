from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

# Client libraries that log every request at INFO; their failures still
# surface through our own events.
_NOISY_LOGGERS = ("aiokafka", "httpx", "openai", "sqlalchemy.engine")

_REQUEST_KEYS = ("correlation_id", "user_id", "tenant_id")


def _drop_none(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in event_dict.items() if value is not None}


def configure_logging(service_name: str, log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for structured JSON output.

    Must be called once at service startup before any logging occurs.
    Binds service_name to all subsequent log entries via contextvars.
    With json_output off, entries are rendered for a terminal instead.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _drop_none,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.ExceptionRenderer(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    structlog.contextvars.bind_contextvars(service=service_name)


def bind_request_context(
    correlation_id: str,
    user_id: str | None = None,
    tenant_id: str | None = None,
) -> None:
    """Bind the caller's identifiers; unset ones are left out of log entries."""
    values = {"correlation_id": correlation_id, "user_id": user_id, "tenant_id": tenant_id}
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def clear_request_context() -> None:
    structlog.contextvars.unbind_contextvars(*_REQUEST_KEYS)
