"""Logging setup driven by the ``log_level`` and ``log_format`` settings.

Modules keep logging through ``logging.getLogger(__name__)``; structlog only
renders the records, so ``extra`` fields end up as keys of the JSON line.
"""

import logging
import sys

import structlog

from rewards_client.core.config import Settings, get_settings


def shared_processors() -> list:
    """Processors applied to stdlib and structlog records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def build_formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
    """Build the handler formatter for ``json`` or ``console`` output."""
    if log_format == "json":
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors(),
        processors=processors,
    )


def configure_logging(settings: Settings | None = None) -> None:
    """Install a root handler using the configured level and format.

    Args:
        settings: Settings to read; defaults to the cached settings
    """
    settings = settings or get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(settings.log_format))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    structlog.configure(
        processors=[
            *shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO
    if not settings.debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
