"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference (SQLite)
- Logger reference
- Commit handling that respects ``DatabaseManager.batch_write``
- Translation of ``sqlite3.Error`` into ``StorageFailure``
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from fitguard.database import DatabaseManager
from fitguard.errors import StorageFailure
from fitguard.logger import StructuredLogger

T = TypeVar("T")


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection."""
        return self._db.sqlite

    def _run(self, op: Callable[[], T], *, operation_name: str) -> T:
        """Execute *op* under the write lock, translating storage errors.

        Outside a batch, a failed statement is rolled back before the
        lock is released.  ``sqlite3.IntegrityError`` is re-raised
        unchanged so callers can
        map constraint violations (duplicate email) to domain errors;
        every other ``sqlite3.Error`` is logged with full context and
        wrapped in :class:`StorageFailure`.

        Parameters
        ----------
        op:
            Zero-argument callable performing the SQLite work.
        operation_name:
            Human-readable label for log messages, e.g.
            ``"create (users)"``.
        """
        try:
            with self._db.write_lock:
                try:
                    return op()
                except sqlite3.Error:
                    # Inside a batch the batch context owns the rollback.
                    if not self._db.in_batch:
                        self.sqlite.rollback()
                    raise
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            self._logger.error(
                "SQLite operation %s failed: %s", operation_name, exc,
                exc_info=True,
                extra={"event": "STORAGE_FAILURE", "table": self.TABLE},
            )
            raise StorageFailure(
                f"Storage operation failed: {operation_name}", original_error=exc,
            ) from exc

    def _commit(self) -> None:
        """Commit the SQLite transaction unless a batch is active.

        When :meth:`DatabaseManager.batch_write` is active, this is a
        no-op -- the batch context manager issues a single commit (or
        rollback) when the ``with`` block exits.  Outside a batch,
        commits happen immediately.

        All repository code should call ``self._commit()`` instead of
        ``self.sqlite.commit()`` so that batch writes work transparently.
        """
        if not self._db.in_batch:
            self.sqlite.commit()
