"""Structured logging setup."""

import logging
import sys

import structlog


def _stderr_logger(*args: object) -> structlog.PrintLogger:
    return structlog.PrintLogger(file=sys.stderr)


def setup_logging(debug: bool = False, level: int | None = None) -> None:
    """Configure structured logging.

    Logs go to stderr so that command output on stdout stays machine readable.
    """
    if level is None:
        level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger,
        # sys.stderr is resolved per call; CLI runners swap it between invocations
        cache_logger_on_first_use=False,
    )


def mask_secret(value: str) -> str:
    """Mask a secret for display, keeping the first and last four characters."""
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]
