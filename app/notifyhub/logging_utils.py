from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
ROOT_LOGGER = "notifyhub"


def _formatter() -> logging.Formatter:
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def _has_handler(logger: logging.Logger, marker: str) -> bool:
    return any(getattr(handler, "_notifyhub_marker", None) == marker for handler in logger.handlers)


def setup_debug_logging(base_dir: Path, *, level: int = logging.DEBUG) -> logging.Logger:
    """
    Mirror every ``notifyhub.*`` logger into <base_dir>/logs/debug.log.
    Repeated calls reuse the existing file handler.
    """
    log_path = Path(base_dir) / "logs" / "debug.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER)
    if not _has_handler(logger, "debug-file"):
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(_formatter())
        handler.setLevel(level)
        handler._notifyhub_marker = "debug-file"  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(min(logger.level or level, level))
    return logger


def configure_service_logging(level: str | int = "INFO") -> None:
    """Send ``notifyhub`` records at ``level`` and above to stderr."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    if not _has_handler(logger, "console"):
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        handler._notifyhub_marker = "console"  # type: ignore[attr-defined]
        logger.addHandler(handler)
    for handler in logger.handlers:
        if getattr(handler, "_notifyhub_marker", None) == "console":
            handler.setLevel(level)
