import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory

RENDERERS = {
    "json": structlog.processors.JSONRenderer,
    "console": lambda: structlog.dev.ConsoleRenderer(colors=False),
}


def configure_logging(log_level="INFO", log_format="json"):
    """
    Configure structured logging on stderr; stdout carries the JSON result.

    Fields bound with ``bind_context`` (a solver worker's pid, for instance)
    are merged into every event of the process.
    """
    if structlog.is_configured():
        return
    if log_format not in RENDERERS:
        raise ValueError(f"unknown log format {log_format!r}, expected one of {sorted(RENDERERS)}")

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
        stream=sys.stderr,
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            RENDERERS[log_format](),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.get_logger().debug("Logging configured", log_level=log_level, log_format=log_format)


def bind_context(**fields):
    structlog.contextvars.bind_contextvars(**fields)
