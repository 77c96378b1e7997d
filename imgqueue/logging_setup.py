"""Structured JSON logging for the service."""

from __future__ import annotations

import gzip
import json
import logging
import os
import shutil
import sys
import time
from datetime import date, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "imgqueue"

_MAX_BYTES = 100 * 1024 * 1024
_BACKUP_COUNT = 10
_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

_LEVEL_NAMES = {
    logging.CRITICAL: "fatal",
    logging.ERROR: "error",
    logging.WARNING: "warning",
    logging.INFO: "info",
    logging.DEBUG: "debug",
}

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class _JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        payload["timestamp"] = (
            datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")
        )
        payload["level"] = _LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        payload["message"] = record.getMessage()
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)


class _ComponentAdapter(logging.LoggerAdapter):
    """Logger adapter that merges its fields with per-call extras."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def _prune_old_backups(directory: Path) -> None:
    cutoff = time.time() - _MAX_AGE_SECONDS
    for backup in directory.glob("processor-*.log*.gz"):
        try:
            if backup.stat().st_mtime < cutoff:
                backup.unlink()
        except OSError:
            pass


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)
    _prune_old_backups(Path(dest).parent)


def _parse_level(log_level: str) -> int:
    return _LEVELS.get(str(log_level).strip().lower(), logging.INFO)


def init_logger(log_level: str, log_to_file: bool, log_dir: str) -> logging.Logger:
    """Configure the service logger: JSON to stdout, and optionally to a rotating file."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False
    logger.setLevel(_parse_level(log_level))

    formatter = _JsonFormatter()
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if log_to_file:
        directory = Path(log_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("could not create log directory: %s", exc)
        log_path = directory / f"processor-{date.today().isoformat()}.log"
        try:
            file_handler = RotatingFileHandler(
                log_path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8"
            )
        except OSError as exc:
            logger.warning("could not open log file %s: %s", log_path, exc)
        else:
            file_handler.namer = lambda name: name + ".gz"
            file_handler.rotator = _gzip_rotator
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.info("logging initialised")
    return logger


def get_logger(component: str) -> logging.LoggerAdapter:
    """Return a logger that tags every record with the given component."""
    return _ComponentAdapter(logging.getLogger(LOGGER_NAME), {"component": component})