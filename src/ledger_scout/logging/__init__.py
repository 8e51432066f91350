from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from ledger_scout.config.models import LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Held at WARNING unless the root level is DEBUG; they log every request.
_LIBRARY_LOGGERS = ("aiohttp.client", "aiohttp.internal", "asyncio")


def _parse_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.strip().upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def init_logging(settings: LoggingSettings) -> None:
    """
    Initialize process logging.

    Messages across the package read "Sentence. key=value key=value", so the
    format adds only time, level and logger name in front. Console output goes
    to stderr because stdout carries the CLI's JSON. A daily-rotated file is
    added when a path is configured, and `settings.loggers` sets individual
    logger levels after the library defaults are applied.
    """

    level = _parse_level(settings.level)
    overrides = {name: _parse_level(value) for name, value in settings.loggers.items()}

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    library_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    for name, override in overrides.items():
        logging.getLogger(name).setLevel(override)

    file_path = settings.file.path.strip()
    if not file_path:
        return

    try:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            filename=str(path),
            when="midnight",
            backupCount=settings.file.rotation.backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        root_logger.error("File logging disabled, handler failed to open. path=%s error=%s", file_path, e)
        return
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


__all__ = ["DATE_FORMAT", "LOG_FORMAT", "init_logging"]
