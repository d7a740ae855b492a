"""Logging helpers for the PMTA import service."""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "PmtaImportService") -> logging.Logger:
    """Return the named logger; handlers come from :func:`configure_logging`."""
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> int:
    """Configure the root logger once per entry point.

    ``level`` defaults to ``PMTA_LOG_LEVEL`` (``INFO`` when unset or unknown).
    Returns the numeric level applied.
    """
    name = (level or os.getenv("PMTA_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, name, logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True  # replace handlers installed by an earlier call
    )
    return numeric
