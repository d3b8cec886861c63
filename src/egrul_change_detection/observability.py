"""Structured logging setup.

All modules obtain their logger through get_logger(__name__) and log with
key/value context: ``logger.info("Batch submitted", entity_type="company")``.
configure_logging() is called once by the process entry point.
"""

from __future__ import annotations

import logging

import structlog

_LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(level: str = "info", log_format: str = "json") -> None:
    """Configure structlog processors and the minimum log level.

    Args:
        level: One of debug, info, warning, error, critical. Unknown values
            fall back to info.
        log_format: "json" for machine-readable output, anything else for the
            coloured development console renderer.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVEL_MAP.get(level.lower(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger bound to the given module name."""
    return structlog.get_logger(logger_name=name)
