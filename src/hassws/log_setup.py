"""Logging initialiser for hassws command-line use.

The library itself only creates module loggers; applications decide where
records go. ``init()`` is what the CLI calls once at start-up: records go to
stderr and, optionally, to a rotating file.

Log format (human-readable, UTC timestamps)::

    2026-03-02T10:00:00.123Z [INFO    ] hassws.connection: Authenticated with gateway (version 2024.6.1).
"""

from __future__ import annotations

import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

_MAX_BYTES = 5 * 1024 * 1024  # 5 MB per file
_BACKUP_COUNT = 5

_FMT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"


class _UtcFormatter(logging.Formatter):
    """Emit ISO-8601 UTC timestamps on every log record."""

    converter = time.gmtime

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ct = self.converter(record.created)
        t = time.strftime("%Y-%m-%dT%H:%M:%S", ct)
        return f"{t}.{int(record.msecs):03d}Z"


def _level(name: str, default: int = logging.INFO) -> int:
    value = getattr(logging, name.upper(), None)
    return value if isinstance(value, int) else default


def init(
    level: str = "INFO",
    *,
    log_file: Path | None = None,
    log_levels: dict[str, str] | None = None,
) -> None:
    """Initialise logging for one process.

    Parameters
    ----------
    level:
        Root logger level string (``"DEBUG"``, ``"INFO"``, …).
    log_file:
        If given, also write to this rotating file; its directory is
        created if absent.
    log_levels:
        Optional per-logger overrides applied after the root level, e.g.
        ``{"hassws.connection": "DEBUG"}``.
    """
    formatter = _UtcFormatter(_FMT)
    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(_level(level))
    root.handlers.clear()
    for h in handlers:
        root.addHandler(h)

    for logger_name, level_str in (log_levels or {}).items():
        override = getattr(logging, level_str.upper(), None)
        if isinstance(override, int):
            logging.getLogger(logger_name).setLevel(override)
