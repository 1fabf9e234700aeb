"""Log sink: `[ISO-8601] message` lines to the console and an append-only file."""
from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT_LOGGER = "lister"


class IsoFormatter(logging.Formatter):
    """Formats records as `[2024-05-01T13:00:00.000Z] message`."""

    def __init__(self) -> None:
        super().__init__("[%(asctime)s] %(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def setup_logging(log_file: Path | None = None, level: int = logging.INFO) -> logging.Logger:
    """Attach console and file handlers to the `lister` logger tree.

    Safe to call more than once; previously attached handlers are replaced.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = IsoFormatter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
