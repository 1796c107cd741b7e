"""Logging setup for the gatebuild command line."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure the root logger.

    Warnings (or everything from INFO up when ``verbose``) go to stderr.
    When ``log_file`` is given, a rotating log of INFO and above is kept
    there as well.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(logger.handlers):
        if getattr(handler, "_gatebuild", False):
            logger.removeHandler(handler)
            handler.close()

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    console_handler._gatebuild = True  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    if log_file is None:
        return

    # Rotating file handler
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler._gatebuild = True  # type: ignore[attr-defined]
    logger.addHandler(file_handler)
