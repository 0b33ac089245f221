"""Monthly hanso (transport) record entry for the vehicle workbooks.

Importing the package sets up the ``hanso_input`` logger once: records go to
a rotating file under ``.logs/`` and to stderr.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "hanso_input.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def _build_handlers() -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(LOG_FILE, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"))
    except OSError as exc:
        # The workbook commands still run with stderr logging only.
        print(f"hanso_input: log file {LOG_FILE} unavailable ({exc})", file=sys.stderr)
    handlers.append(logging.StreamHandler(sys.stderr))
    return handlers


def _setup_package_logger() -> logging.Logger:
    logger = logging.getLogger("hanso_input")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in _build_handlers():
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


log = _setup_package_logger()
log.info("hanso_input logging ready (file: %s)", LOG_FILE)
