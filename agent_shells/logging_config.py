"""Logging setup for the agent_shells server.

Library modules only ever call ``logging.getLogger("agent_shells.<module>")``;
handlers are installed here, once, by the CLI.
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Optional

ROOT_LOGGER = "agent_shells"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_log_level(verbose: bool = False) -> int:
    """Resolve the log level: verbose wins, then AGENT_SHELLS_LOG_LEVEL, then INFO."""
    if verbose:
        return logging.DEBUG
    name = os.getenv("AGENT_SHELLS_LOG_LEVEL", "INFO").upper()
    return _LEVELS.get(name, logging.INFO)


def setup_logging(verbose: bool = False, *, stream: Optional[object] = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    handler = logging.StreamHandler(stream or sys.__stderr__)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(get_log_level(verbose))
    logger.propagate = False
    return logger


def uvicorn_log_level(verbose: bool) -> str:
    # uvicorn's own debug output is mostly noise for operators
    return "info" if verbose else "warning"
