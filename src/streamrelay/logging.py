"""Structured logging setup shared by the relay."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog
from structlog.contextvars import (
    bind_contextvars,
    clear_contextvars,
    merge_contextvars,
)

PIPELINE_TRACE_ENV = "STREAMRELAY_TRACE_PIPELINE"
_TRUTHY = {"1", "true", "yes", "on"}


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    level = logging.DEBUG if debug else logging.INFO
    renderer: Any
    if sys.stderr.isatty():
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )


def get_logger(name: str | None = None) -> Any:
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    bind_contextvars(**values)


def clear_context() -> None:
    clear_contextvars()


def pipeline_trace_enabled() -> bool:
    return os.environ.get(PIPELINE_TRACE_ENV, "").strip().lower() in _TRUTHY


def log_pipeline(logger: Any, event: str, **fields: Any) -> None:
    """Log a line-level pipeline trace; promoted to info when tracing is on."""
    if pipeline_trace_enabled():
        logger.info(event, **fields)
    else:
        logger.debug(event, **fields)
