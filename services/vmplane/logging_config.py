"""
Centralized logging configuration for vmplane.

Configures structlog for JSON output in production and console in development.
The API server and the worker share this setup and differ only by the
``component`` field stamped on every event.
"""

import logging
import sys
from datetime import UTC, datetime
from typing import Any

import structlog
from structlog.types import EventDict, Processor

_component = "api"

# Libraries that log every request or packet at INFO.
_NOISY_LOGGERS = ("asyncssh", "httpx", "httpcore", "asyncio", "sqlalchemy.engine")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application and component context to log events."""
    event_dict["app"] = "vmplane"
    event_dict["component"] = _component
    return event_dict


def reorder_keys(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Put level, timestamp and event first so log lines scan well."""
    head: EventDict = {}
    for key in ("level", "timestamp", "event"):
        if key in event_dict:
            head[key] = event_dict.pop(key)
    head.update(event_dict)
    return head


def utc_timestamper(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO8601 UTC timestamp (millisecond precision) to log events."""
    now = datetime.now(UTC)
    event_dict["timestamp"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return event_dict


def configure_logging(
    json_logs: bool = True,
    log_level: str = "INFO",
    component: str = "api",
) -> None:
    """Configure stdlib logging and structlog for one process."""
    global _component  # noqa: PLW0603
    _component = component
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        utc_timestamper,
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]

    if json_logs:
        renderers: list[Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            reorder_keys,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=renderers,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
