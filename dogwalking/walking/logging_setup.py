"""Centralized logging setup for the web app and scripts."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level_name: str = "INFO") -> None:
    """Configure the root logger with a single console handler."""
    level = getattr(logging, level_name.strip().upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, force=True)
    # werkzeug logs every request at INFO
    logging.getLogger("werkzeug").setLevel(max(level, logging.WARNING))
