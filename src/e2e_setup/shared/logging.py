"""Logging configuration for e2e-setup.

structlog on top of standard logging. Human-readable on a terminal, JSON
lines for CI log collectors. Every event carries the run identifier and
backend once bind_run() has been called.
"""

import logging
import sys
from pathlib import Path

import structlog

# Client libraries that log every HTTP round-trip at DEBUG/INFO
NOISY_LOGGERS = ("urllib3", "docker", "kubernetes")


def configure_logging(
    level: str = "info",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Configure logging for the application.

    Called once on startup by the CLI.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Optional path to log file, instead of stderr
        json_output: If True, output JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_file:
        handler: logging.Handler = logging.FileHandler(str(log_file))
        colors = False
    else:
        handler = logging.StreamHandler(sys.stderr)
        colors = sys.stderr.isatty()
    handler.setLevel(log_level)

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        format="%(message)s",
        force=True,
    )
    library_level = log_level if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run(identifier: str, backend: str) -> None:
    """Attach the run identity to every following log event."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(run=identifier, backend=backend)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
