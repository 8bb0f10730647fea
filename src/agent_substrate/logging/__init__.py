from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from agent_substrate.config.models import FileLoggingSettings, LoggingSettings

_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.strip().upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _daily_file_handler(settings: FileLoggingSettings) -> Optional[logging.Handler]:
    raw_path = settings.path.strip()
    if not raw_path:
        return None
    path = Path(raw_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            filename=str(path),
            when="midnight",
            backupCount=settings.rotation.backup_count,
            encoding="utf-8",
        )
    except OSError:
        logging.getLogger(__name__).error("Log file could not be opened. path=%s", raw_path, exc_info=True)
        return None
    handler.suffix = "%Y-%m-%d"
    return handler


def _attach(logger: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def init_logging(settings: LoggingSettings) -> None:
    """
    Route all records through the root logger.

    Records go to stderr, so command output on stdout stays parseable, and to a
    daily rotating file when `settings.file.path` is set. Loggers listed in
    `settings.quiet_loggers` are held at WARNING or above.
    """
    level = resolve_level(settings.level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    _attach(root_logger, logging.StreamHandler(sys.stderr), level, formatter)
    # Opened after the stream handler so a failure to open the file is reported.
    file_handler = _daily_file_handler(settings.file)
    if file_handler is not None:
        _attach(root_logger, file_handler, level, formatter)

    for name in settings.quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


__all__ = ["init_logging", "resolve_level"]
