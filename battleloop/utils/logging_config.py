import logging
import sys
import os
from datetime import datetime

from battleloop.core.config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Level-coloured console output; plain when stderr is not a terminal."""

    COLORS = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    reset = "\x1b[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        message = super().format(record)
        color = self.COLORS.get(record.levelno)
        # Levels outside the standard range stay uncoloured
        if not self.use_color or not color:
            return message
        return f"{color}{message}{self.reset}"


def setup_logging(level=None, log_dir: str = LOG_DIR):
    """Console (stderr) + dated file logging for the battle loop service."""
    if level is None:
        level = logging.getLevelName(LOG_LEVEL.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(
        os.path.join(log_dir, f"battleloop_{datetime.now().strftime('%Y%m%d')}.log")
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    for logger_name in ["battleloop", "uvicorn", "uvicorn.error", "uvicorn.access", "main"]:
        l = logging.getLogger(logger_name)
        l.setLevel(level)
        l.propagate = True

    root_logger.info("Logging initialized at %s (console + %s).", logging.getLevelName(level), log_dir)
