from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def init_logging(level: str = "INFO") -> logging.Logger:
    """
    Console logger for the package namespace.

    Writes to stderr. With the stdio transport, stdout carries MCP messages.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("proxy_traffic_mcp")
    logger.setLevel(log_level)
    logger.propagate = False  # avoid duplicate lines if the root logger has handlers

    if not logger.handlers:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(log_level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    return logger
