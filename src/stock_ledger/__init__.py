"""Inventory ledger backed by an Excel workbook.

Importing the package configures the shared ``stock_ledger`` logger used by
every module. Diagnostics go to a rotating file under ``.logs/`` at the
project root and to stderr. ``STOCK_LEDGER_LOG_DIR`` moves the log directory
and ``STOCK_LEDGER_LOG_LEVEL`` (``DEBUG``, ``INFO``, ...) changes verbosity.

This diagnostic log is separate from the activity log kept inside the store
(see :mod:`stock_ledger.audit`).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


__version__ = "2.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV_VAR = "STOCK_LEDGER_LOG_DIR"
LOG_LEVEL_ENV_VAR = "STOCK_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "stock_ledger.log"


def _resolve_log_dir(raw: Optional[str]) -> Path:
    """Return the directory holding the rotating log file."""

    if raw:
        return Path(raw).expanduser()
    return PROJECT_ROOT / ".logs"


def _resolve_level(raw: Optional[str]) -> int:
    """Translate a level name such as ``"debug"`` into a ``logging`` level.

    Unknown or empty names fall back to ``INFO``.
    """

    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


LOG_DIR = _resolve_log_dir(os.environ.get(LOG_DIR_ENV_VAR))
LOG_FILE = LOG_DIR / LOG_FILE_NAME


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level(os.environ.get(LOG_LEVEL_ENV_VAR))
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Logger initialized for the 'stock_ledger' package (version %s).", __version__)
