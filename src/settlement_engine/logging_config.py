"""Centralized logging configuration."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-40s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Webhook signature failures and other security events are logged here.
SECURITY_LOGGER = "settlement_engine.security"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the package logger.

    Safe to call more than once; the handler is installed only the first time.
    """
    logger = logging.getLogger("settlement_engine")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(h, "_settlement_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._settlement_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_security_logger() -> logging.Logger:
    """Logger for security events (rejected webhooks)."""
    return logging.getLogger(SECURITY_LOGGER)
