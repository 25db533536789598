# site_lens/logger.py
"""Logging setup for **SiteLens**.

One named logger (``"SiteLens"``) serves the scanner, the HTTP API and the
job runner. Import the ready instance::

      from site_lens.logger import logger
      logger.warning("Page %s timed out", url)

or call ``logging.getLogger("SiteLens")``; both reach the same handlers.
Records go to stderr (stdout carries the CLI's JSON report) and, when asked,
to a rotating file. The starting level comes from ``SITE_LENS_LOG_LEVEL``.
"""
from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Tuple, Union

LOGGER_NAME: Final[str] = "SiteLens"
_DEFAULT_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# aiohttp writes one access line per poll of /api/jobs/{id}
NOISY_LOGGERS: Final[Tuple[str, ...]] = ("aiohttp.access", "asyncio")

_LevelT = Union[int, str]


def _level_from_env(default: str = "INFO") -> str:
    value = os.getenv("SITE_LENS_LOG_LEVEL", "").strip().upper()
    return value if value in logging.getLevelNamesMapping() else default


def _handler(handler: logging.Handler, fmt: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def configure(
    *,
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
    replace_handlers: bool = True,
) -> logging.Logger:
    """(Пере)настраивает логгер проекта.

    :param level: уровень (``"DEBUG"`` или число)
    :param log_file: файл логов с ротацией 5 МБ x 3; ``None`` = только stderr
    :param log_format: формат :class:`logging.Formatter`
    :param replace_handlers: убрать ранее добавленные обработчики
    """
    lg = logging.getLogger(LOGGER_NAME)
    lg.setLevel(level)
    if replace_handlers:
        lg.handlers.clear()

    lg.addHandler(_handler(logging.StreamHandler(sys.stderr), log_format))
    if log_file is not None:
        rotating = RotatingFileHandler(
            filename=str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        lg.addHandler(_handler(rotating, log_format))
    lg.propagate = False

    verbose = lg.getEffectiveLevel() <= logging.DEBUG
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if verbose else logging.WARNING)
    return lg


def init_logging(
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """Shortcut used by the CLI and the HTTP server entry points."""
    return configure(level=level, log_file=log_file, log_format=log_format, replace_handlers=True)


logger: logging.Logger = init_logging(_level_from_env())

__all__ = ["logger", "configure", "init_logging", "LOGGER_NAME", "NOISY_LOGGERS"]
