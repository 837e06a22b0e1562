"""Structured logging with structlog.

Colorized console output for development, JSON for production.

Usage:
    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("account_sync_completed", account_id=3, fetched=650)
"""

import logging
import sys

import structlog

import config


def setup_logging(log_level: str = config.LOG_LEVEL, json_output: bool | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_level: Python log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Force the JSON renderer on or off. Defaults to JSON only
                     when ``ENVIRONMENT`` is ``production``.
    """
    if json_output is None:
        json_output = config.ENVIRONMENT == "production"

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
