"""Structured logging singleton.

Reads ``BATON_LOG_LEVEL`` / ``BATON_LOG_FORMAT`` straight from the environment
so logging works before Settings are loaded.  ``apply_level()`` applies the
``[logging] level`` setting once the gateway has read its config.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _render_processors() -> list[structlog.types.Processor]:
    if os.environ.get("BATON_LOG_FORMAT", "console").lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("BATON_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # stdlib root logger first, so filter_by_level sees the right level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_render_processors(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("baton")


logger = _setup_logging()


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler


def apply_level(level_name: str) -> None:
    """Apply ``[logging] level`` from config.toml unless BATON_LOG_LEVEL is set."""
    if "BATON_LOG_LEVEL" in os.environ:
        return
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))
