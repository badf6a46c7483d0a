"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "anthropic")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog. Set JSON_LOGS=1 for JSON output (servers), default is console (dev)."""
    use_json = os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
