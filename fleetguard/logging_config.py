import logging
import os
from logging.handlers import RotatingFileHandler

from fleetguard.config import LOG_DIR, LOG_LEVEL

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _root():
    # console output is attached once, on the package logger
    root = logging.getLogger("fleetguard")
    if not root.handlers:
        root.setLevel(LOG_LEVEL)
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(FORMAT))
        root.addHandler(console)
    return root


def get_logger(name, filename):
    """Component logger writing to ``LOG_DIR/filename`` and to the console."""
    _root()
    logger = logging.getLogger(f"fleetguard.{name}")

    # one file handler per component
    if logger.handlers:
        return logger

    os.makedirs(LOG_DIR, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=5_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(file_handler)
    return logger
