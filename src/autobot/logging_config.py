"""Process logging setup: console output plus an optional daily log file."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DailyFileHandler(logging.FileHandler):
    """File handler writing to ``<log_dir>/autobot_YYYYMMDD.log``, switching files at midnight."""

    def __init__(self, log_dir: Path, encoding: str = "utf-8") -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._current_date = datetime.now().strftime("%Y%m%d")
        super().__init__(self._path_for(self._current_date), mode="a", encoding=encoding)

    def _path_for(self, date_str: str) -> str:
        return str(self.log_dir / f"autobot_{date_str}.log")

    def emit(self, record: logging.LogRecord) -> None:
        current_date = datetime.now().strftime("%Y%m%d")
        if current_date != self._current_date:
            self.close()
            self.baseFilename = self._path_for(current_date)
            self._current_date = current_date
            self.stream = self._open()
        super().emit(record)


def setup_logging(log_level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the ``autobot`` logger tree.

    Args:
        log_level (str): Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir (Optional[Path]): Directory for daily log files; console only when `None`.

    Returns:
        logging.Logger: The configured ``autobot`` package logger.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logger = logging.getLogger("autobot")
    logger.setLevel(numeric_level)
    logger.propagate = False
    if logger.handlers:
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir is not None:
        file_handler = DailyFileHandler(log_dir)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.info("Logging to %s at level %s", file_handler.baseFilename, log_level.upper())

    return logger
