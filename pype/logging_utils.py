"""Logging capability for the Fitting pipeline, built on structlog.

A Fitting accepts any object with info() and error() methods taking one
pre-formatted message. structlog's BoundLogger fits; NullLogger is the
default when no logger is supplied.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Protocol

import structlog
from structlog.contextvars import merge_contextvars
from structlog.typing import Processor


class FittingLogger(Protocol):
    """Sink for pre-formatted diagnostic messages. Must not raise."""

    def info(self, message: str) -> Any: ...

    def error(self, message: str) -> Any: ...


class NullLogger:
    """Logger that discards everything."""

    def info(self, message: str) -> None:
        pass

    def error(self, message: str) -> None:
        pass


def configure_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Configure structlog and stdlib logging for pype.

    Args:
        log_level: Logging level name (e.g. "DEBUG", "INFO").
        json_output: Render JSON lines instead of console output. When None,
            LOG_FORMAT=json in the environment selects JSON.
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    processors: list[Processor] = [
        merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_logger(name: str | None = None) -> Any:
    """Create a structlog logger, optionally bound with logger_name.

    The returned BoundLogger satisfies FittingLogger.
    """
    logger = structlog.get_logger()

    if name:
        logger = logger.bind(logger_name=name)

    return logger
