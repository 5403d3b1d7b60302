# report_engine/logging/config.py
"""Logging setup for the API process and the task queue workers."""

import logging
from pathlib import Path
from typing import Optional

from report_engine.core.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(log_file: str = "report_engine.log", level: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``report_engine`` logger hierarchy.

    Adds a console handler and, when LOG_DIR is set, a file handler. Safe to
    call more than once; handlers are only attached the first time.
    """
    settings = get_settings()
    logger = logging.getLogger("report_engine")
    logger.setLevel(level or settings.log_level)

    if getattr(logger, "_report_engine_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.log_dir:
        # Ensure log directory exists
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger._report_engine_configured = True
    return logger
