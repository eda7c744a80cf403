"""
Structured JSON Logging Module.

Every log line is one JSON object, so the operational sink can parse
security decisions without scraping free text::

    {"timestamp": "...", "level": "WARNING", "logger_name": "fitguard.auth",
     "event": "LOGIN_FAILED", "message": "...", "extra": {"reason": "..."}}

Caller context travels through the standard ``extra`` kwarg.  The
``event`` key is lifted to the top level; any other key that names
secret material (``password``, ``token`` ...) is redacted before the
record is written.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Optional, TextIO, Union

from fitguard.utils.general import REDACTED, is_sensitive_key

if TYPE_CHECKING:
    from fitguard.config import AppConfig


class JSONFormatter(logging.Formatter):
    """Formats log records as structured JSON objects.

    Each log entry contains:
        - timestamp  (ISO-8601, UTC)
        - level      (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        - logger_name
        - event      (when the caller tagged the record)
        - message
        - extra      (remaining caller fields, secrets redacted)
        - exception  (formatted traceback, when present)
    """

    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[str, dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
        }

        event: Optional[object] = getattr(record, "event", None)
        if event is not None:
            entry["event"] = str(event)
        entry["message"] = record.getMessage()

        context: dict[str, str] = self._context(record)
        if context:
            entry["extra"] = context

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)

    def _context(self, record: logging.LogRecord) -> dict[str, str]:
        context: dict[str, str] = {}
        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS or key == "event":
                continue
            context[key] = REDACTED if is_sensitive_key(key) else str(value)
        return context


class StructuredLogger:
    """Injectable logger.

    Wraps a ``logging.Logger`` that writes JSON lines to a stream
    (stdout by default) and, when ``LOG_FILE`` is set, to a rotating
    file.  Components receive one through their constructor::

        class RateLimiter:
            def __init__(self, db, logger: StructuredLogger, config) -> None:
                self._logger = logger

        log = StructuredLogger(name="fitguard.auth")
        log.warning("Lockout triggered", extra={"event": "LOCKOUT_TRIGGERED"})

    Handlers are attached once per logger name; building a second
    ``StructuredLogger`` with the same name reuses them.
    """

    def __init__(
        self,
        name: str = "fitguard",
        level: int = logging.INFO,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
        config: Optional["AppConfig"] = None,
    ) -> None:
        # Lazy import: config validation itself logs through stdlib logging.
        from fitguard.config import get_config
        cfg = config or get_config()

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)
        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        stream_handler = logging.StreamHandler(stream or sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(formatter)
        self._logger.addHandler(stream_handler)

        target: str = log_file if log_file is not None else cfg.LOG_FILE
        if target:
            self._attach_file_handler(
                target,
                level,
                formatter,
                max_bytes if max_bytes is not None else cfg.LOG_MAX_BYTES,
                backup_count if backup_count is not None else cfg.LOG_BACKUP_COUNT,
            )

    def _attach_file_handler(
        self,
        target: str,
        level: int,
        formatter: logging.Formatter,
        max_bytes: int,
        backup_count: int,
    ) -> None:
        """Add a rotating file handler, or fall back to console-only."""
        try:
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                filename=str(path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s': %s. Logging to console only.",
                target,
                exc,
                extra={"event": "LOG_FILE_UNAVAILABLE"},
            )
            return
        handler.setLevel(level)
        handler.setFormatter(formatter)
        self._logger.addHandler(handler)

    @property
    def logger(self) -> logging.Logger:
        """The underlying ``logging.Logger``."""
        return self._logger

    # -- Delegates ------------------------------------------------------------

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "fitguard", config: Optional["AppConfig"] = None) -> StructuredLogger:
    """Return a ``StructuredLogger`` for *name*, configured from *config*
    or the global configuration."""
    return StructuredLogger(name=name, config=config)
