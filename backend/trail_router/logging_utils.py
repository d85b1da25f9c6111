from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "trail_router"
LOG_FILE_NAME = "engine.log.jsonl"


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "asctime": "ts"},
    )


def _log_file_path() -> Path | None:
    if not settings.log_file_enabled:
        return None
    configured = settings.log_dir.strip()
    return (Path(configured) if configured else Path(settings.out_dir) / "logs") / LOG_FILE_NAME


def get_logger() -> logging.Logger:
    """The package logger, given JSON handlers on first use only."""
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_trail_router_ready", False):
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False

    stream = logging.StreamHandler()
    stream.setFormatter(_formatter())
    logger.addHandler(stream)

    log_file = _log_file_path()
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            logger.warning(
                "log_file_unavailable",
                extra={"event": "log_file_unavailable", "path": str(log_file), "error": str(exc)},
            )
        else:
            file_handler.setFormatter(_formatter())
            logger.addHandler(file_handler)

    logger._trail_router_ready = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured record; ``event`` is both the message and a top-level field."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    LOGGER.log(level, event, extra={"event": event, **fields})
