import logging
import os
import sys
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Console formatter; colours the whole line by level."""

    COLORS = {
        logging.DEBUG: "\x1b[36m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
    }
    RESET = "\x1b[0m"

    def __init__(self):
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record):
        line = super().format(record)
        color = self.COLORS.get(min(record.levelno, logging.ERROR))
        return f"{color}{line}{self.RESET}" if color else line


_configured = False


def setup_logging(level="INFO", log_dir: str = "") -> None:
    """Configure the root logger once per process.

    Streamlit re-executes app.py on every interaction, so repeated calls are no-ops.
    """
    global _configured
    if _configured:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"statafix_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # keep library chatter down
    for noisy in ["httpx", "httpcore", "sqlalchemy.engine"]:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    _configured = True
    root_logger.info("Logging initialized (level=%s).", logging.getLevelName(level))
