"""
Structured logging for the pipeline.

Every log line is a structlog event. Steps bind ``analysis_id`` and ``step``
through LogContext, so worker output can be filtered per analysis run
without threading ids through every call. Secret-looking keys are masked
before rendering.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger


SECRET_KEY_MARKERS = ("api_key", "password", "secret", "authorization")
REDACTED = "***"

# Chatty libraries: request lines from httpx, per-run job lines from apscheduler
QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "apscheduler", "aiosqlite")


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Mask values whose key names look like credentials."""
    for key in event_dict:
        if any(marker in key.lower() for marker in SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def add_app_env(app_env: str) -> Processor:
    """Processor stamping the deployment environment on every event."""

    def processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return processor


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    app_env: Optional[str] = None,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        json_format: JSON lines for workers, colored console output otherwise.
        log_file: Also append standard library records to this file.
        app_env: Added as ``app_env`` to every structlog event when given.
    """
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if app_env:
        processors.append(add_app_env(app_env))
    processors += [
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    # stdout belongs to the CLI's rich tables
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Bind key/value pairs to every log line emitted inside the block.

    Nested contexts restore the outer values on exit.

    Example:
        >>> with LogContext(analysis_id="a1", step="searching"):
        ...     logger.info("Step started")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._tokens = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
