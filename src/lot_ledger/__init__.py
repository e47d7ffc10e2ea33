"""Garment lot and sale ledger backed by a spreadsheet.

Importing the package configures the ``lot_ledger`` logger, which writes to
``.logs/lot_ledger.log`` under the project root (or under
``$LOT_LEDGER_LOG_DIR`` when set) and echoes to stderr.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("LOT_LEDGER_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "lot_ledger.log"


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger log and a stderr echo to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
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
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: ledger log unavailable at '{LOG_FILE}': {exc}", file=sys.stderr)

    # Only warnings and errors reach the terminal; the file keeps the full trail.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Ledger logging ready (version %s, file %s)", __version__, LOG_FILE)
