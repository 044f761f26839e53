"""
Logging Setup
=============
Structured logging configuration for the middleware.
"""

import logging
import os

import structlog

LOGGER_NAME = "revenium_openai"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def configure_logging(debug: bool = False, log_format: str = "console", force: bool = False) -> None:
    """
    Configure structlog for the middleware.

    The host application's own structlog configuration is left alone unless
    ``force`` is set; only the level of the ``revenium_openai`` logger is
    adjusted in that case.

    Args:
        debug: Emit debug logs
        log_format: ``json`` or ``console``
        force: Replace an existing structlog configuration
    """
    set_log_level(debug)

    if structlog.is_configured() and not force:
        return

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def set_log_level(debug: bool) -> None:
    """Set the level of the middleware's stdlib logger."""
    logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG if debug else logging.INFO)


def configure_from_env() -> None:
    """Configure logging from ``REVENIUM_DEBUG`` and ``REVENIUM_LOG_FORMAT``."""
    configure_logging(
        debug=_env_flag("REVENIUM_DEBUG"),
        log_format=os.getenv("REVENIUM_LOG_FORMAT", "console").strip().lower(),
    )
