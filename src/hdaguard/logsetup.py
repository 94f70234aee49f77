"""
Log sink configuration.

Adds the SUCCESS severity, configures console and rotating file output,
and reads back the tail of the log for operators.
"""

from __future__ import annotations

import logging
import logging.handlers
from collections import deque
from pathlib import Path

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def level_from_name(name: str) -> int:
    """Resolve a configured level name, including SUCCESS."""
    if name.lower() == "success":
        return SUCCESS
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(
    log_level: str = "info",
    log_file: str | Path | None = None,
    retention_days: int = 7,
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Minimum level name
        log_file: Optional log file; rotated daily
        retention_days: Number of rotated files kept before deletion
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                logging.handlers.TimedRotatingFileHandler(
                    path,
                    when="midnight",
                    backupCount=retention_days,
                    encoding="utf-8",
                )
            )
        except OSError as e:
            logging.getLogger(__name__).warning(
                "Cannot open log file %s: %s", path, e
            )

    logging.basicConfig(
        level=level_from_name(log_level),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
    )


def tail_log(path: str | Path, lines: int = 50) -> list[str]:
    """
    Read the last lines of a log file.

    Raises:
        FileNotFoundError: If the log file does not exist.
    """
    with open(path, encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
