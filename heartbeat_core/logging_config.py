"""
LOGGING
=======

Handlers for the ``heartbeat_core`` parent logger. Child loggers
(heartbeat_core.runtime, heartbeat_core.scheduler.scheduler, ...) inherit
them, so runtime lines carry ``[agent:<id>]`` and scheduler lines
``[scheduler]`` in one stream.

Output:
    console   always
    file      rotating, 10 MB x 5, at ``logging.file`` or
              ``<paths.data_dir>/logs/heartbeat.log``; ``"none"`` turns it off

Usage:
    setup_logging_from_config(cfg)       # once, at process start
    reset_logging()                      # tests only
"""

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .config.loader import GlobalConfig

ROOT_LOGGER = "heartbeat_core"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_NAME = "heartbeat.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

_logging_configured = False


def resolve_log_path(log_file: Optional[str], data_dir: Optional[str]) -> Optional[Path]:
    """
    Where the file handler should write, or None for console only.

    ``"none"`` (any case) disables file output. Without an explicit file the
    log lives under ``<data_dir>/logs``; without a data dir there is no file.
    """
    if log_file is not None:
        return None if log_file.strip().lower() == "none" else Path(log_file)
    if data_dir is None:
        return None
    return Path(data_dir) / "logs" / DEFAULT_LOG_NAME


def _build_handlers(level: int, log_path: Optional[Path]) -> List[logging.Handler]:
    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
            )
        )
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(fmt)
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    data_dir: Optional[str] = None,
) -> bool:
    """Attach console and optional file handlers. Only the first call has an effect.

    Args:
        level: Logging level name; unknown names fall back to INFO.
        log_file: Explicit log file, ``"none"``, or None for the data-dir default.
        data_dir: Base data directory used to derive the default log path.

    Returns:
        True if handlers were attached by this call.
    """
    global _logging_configured
    if _logging_configured:
        return False
    _logging_configured = True

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    parent_logger = logging.getLogger(ROOT_LOGGER)
    parent_logger.setLevel(numeric_level)
    parent_logger.propagate = False
    for handler in _build_handlers(numeric_level, resolve_log_path(log_file, data_dir)):
        parent_logger.addHandler(handler)
    return True


def setup_logging_from_config(config: "GlobalConfig") -> bool:
    """Configure logging from the ``logging`` and ``paths`` config sections."""
    return setup_logging(
        level=config.logging_level,
        log_file=config.logging_file,
        data_dir=config.paths.data_dir,
    )


def reset_logging() -> None:
    """Detach and close our handlers so ``setup_logging`` can run again."""
    global _logging_configured
    parent_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(parent_logger.handlers):
        parent_logger.removeHandler(handler)
        handler.close()
    parent_logger.propagate = True
    parent_logger.setLevel(logging.NOTSET)
    _logging_configured = False
