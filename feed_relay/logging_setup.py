from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Console structlog output at the given level; stdlib loggers follow the same level."""
    numeric = logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
