"""Logging configuration for the telekinesis CLI and embedding hosts.

The library itself only creates module loggers; call :func:`setup_logging`
once from an entrypoint to get console output and a rotating log file.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

DEFAULT_LOG_FILENAME = "telekinesis.log"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(threadName)s %(name)s: %(message)s"


def get_default_log_dir() -> Path:
    xdg_state = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local/state"))
    return xdg_state / "telekinesis"


def _resolve_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def setup_logging(
    *,
    level: str | int = "INFO",
    log_file: str | Path | None = None,
    add_console: bool = True,
    logger_name: str = "telekinesis",
) -> logging.Logger:
    """Attach a rotating file handler and optionally a console handler.

    Calling it again only adjusts the level, handlers are not duplicated.
    """
    resolved_level = _resolve_level(level)
    logger = logging.getLogger(logger_name)
    logger.setLevel(resolved_level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(resolved_level)
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S")

    log_path = Path(log_file) if log_file else get_default_log_dir() / DEFAULT_LOG_FILENAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
        )
    except OSError as exc:
        logger.warning("File logging disabled, cannot open %s: %s", log_path, exc)
    else:
        file_handler.setLevel(resolved_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if add_console:
        console = logging.StreamHandler()
        console.setLevel(resolved_level)
        console.setFormatter(formatter)
        logger.addHandler(console)
    return logger
