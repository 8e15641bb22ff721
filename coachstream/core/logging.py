"""Logging configuration."""
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytz


_initialized = False


class LocalTimeFormatter(logging.Formatter):
    """Formatter that renders timestamps in the configured user timezone."""

    def __init__(self, fmt=None, datefmt=None, tz_name: str = "UTC"):
        super().__init__(fmt, datefmt)
        self.tz = pytz.timezone(tz_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.strftime('%Y-%m-%d %H:%M:%S')


def setup_logging(
    level: str = "INFO",
    tz_name: str = "UTC",
    log_dir: Optional[str] = None,
    force: bool = False,
) -> logging.Logger:
    """Install console (and optional file) handlers on the root logger.

    Safe to call more than once; handlers are only installed on the first
    call unless force is set.
    """
    global _initialized

    root = logging.getLogger()
    if _initialized and not force:
        return logging.getLogger("coachstream")

    formatter = LocalTimeFormatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        tz_name=tz_name,
    )

    root.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir) / "coachstream.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _initialized = True
    return logging.getLogger("coachstream")
