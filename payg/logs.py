"""
Logging plumbing shared by the payg components.

Components keep a small ``_log(msg, level)`` helper that prefixes their
messages and forwards here; level names follow the lightning plugin
convention ('debug', 'info', 'warn', 'error').
"""

import logging

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logger = logging.getLogger("payg")


def log(msg: str, level: str = "info") -> None:
    logger.log(LOG_LEVELS.get(level, logging.INFO), msg)


def configure_logging(level: str = "info") -> None:
    """Configure root logging once for the coordinator process."""
    logging.basicConfig(level=LOG_LEVELS.get(level, logging.INFO), format=LOG_FORMAT)
