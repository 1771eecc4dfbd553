"""
Logging configuration for the chainroll API.
"""
import logging
import logging.handlers
from pathlib import Path

from backend.config import LOG_FILE, LOG_LEVEL

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """Configure the root logger once; repeated calls replace the handlers."""
    logger = logging.getLogger()
    logger.handlers = []

    level_name = (level or LOG_LEVEL).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    target = log_file or LOG_FILE
    if target:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
        # 10 MB per file, 5 files kept
        file_handler = logging.handlers.RotatingFileHandler(
            target,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # uvicorn access lines duplicate the scan audit log
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return logger
