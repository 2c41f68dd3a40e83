"""Structured logging setup shared by the server and the client CLI."""

from __future__ import annotations

import logging
from typing import TextIO

import structlog


def configure_logging(level: str = "INFO", *, stream: TextIO | None = None, cache_loggers: bool = True) -> None:
    numeric = getattr(logging, str(level or "INFO").strip().upper(), logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    # uvicorn logs through the stdlib; keep both at the same threshold.
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s %(message)s", stream=stream)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=cache_loggers,
    )
