"""Centralised logging configuration.

Call configure() once at startup (from app.py or photoshoot_cli.py).
All modules then use logging.getLogger(__name__) normally.

Output:
  console  — LOG_LEVEL (default INFO), compact single-line format
  logs/app.log — DEBUG level, full format, rotating (5 × 5 MB)
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

LOGS_DIR = Path(__file__).parent / "logs"
LOG_FILE  = LOGS_DIR / "app.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s — %(message)s"
_FILE_FMT    = "%(asctime)s  %(levelname)-7s  %(name)-16s  %(filename)s:%(lineno)d — %(message)s"
_DATE_FMT    = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "werkzeug", "openai", "anthropic", "replicate")


def configure(level: Optional[str] = None, log_dir: Optional[Path] = None) -> None:
    """Set up console + rotating file handlers.  Safe to call multiple times."""
    root = logging.getLogger()
    if root.handlers:
        return

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    log_dir = Path(log_dir) if log_dir else LOGS_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    root.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(ch)

    fh = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE.name,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(fh)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
