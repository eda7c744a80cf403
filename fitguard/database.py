"""
Database Abstraction Layer.

Manages the local SQLite store of the FitGuard authentication core.
Every credential decision must be resolvable offline, so SQLite is the
primary (and only) store: accounts, owned workout records, rate-limit
counters, the security audit trail and the encrypted token store all
live in one file.

Data access is performed through the Repository pattern and the
services.  This module only manages the raw database *connection*; it
contains no query logic.

Security Note -- Encryption at Rest
-----------------------------------
The local SQLite database is **not** encrypted at rest.  Mitigations:

- Session tokens are AES-256-GCM encrypted in the ``secure_store``
  table (see ``EncryptedTokenStore``).
- Password material is stored only as tagged hashes; historical
  plaintext rows are migrated on the next successful login.
- Audit rows carry an HMAC signature so file-level edits are detected
  by ``AuditLog.verify_integrity``.

Usage (dependency injection at start-up)::

    from fitguard.database import DatabaseManager
    from fitguard.logger import StructuredLogger

    db = DatabaseManager(
        sqlite_path=Path("fitguard_local.db"),
        logger=StructuredLogger(name="fitguard.database"),
    )
    # Inject `db` into repositories / services that need it.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional, Union

from fitguard.errors import StorageFailure
from fitguard.logger import StructuredLogger

_BUSY_TIMEOUT_MS: int = 5000


class DatabaseManager:
    """Owns the connection to the local SQLite database.

    Fully configured at construction time via dependency injection.  No
    separate ``init_*`` methods are required.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the local SQLite database file, or
        ``":memory:"``.  Parent directories must already exist.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._in_batch: bool = False
        self._closed: bool = False
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the initialised SQLite connection."""
        return self._sqlite_conn

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def write_lock(self) -> threading.RLock:
        """Return the write lock for thread-safe SQLite operations.

        All code that performs SQLite writes (INSERT, UPDATE, DELETE,
        or any operation followed by ``commit()``) should acquire this
        lock first::

            with db.write_lock:
                db.sqlite.execute("INSERT ...")
                db.sqlite.commit()

        The connection is shared between threads, so reads that must
        observe a consistent snapshot take the lock as well.
        """
        return self._write_lock

    @property
    def in_batch(self) -> bool:
        """``True`` when a :meth:`batch_write` context is active.

        Repository code checks this flag before issuing ``commit()``
        so that multi-statement operations can defer the commit to a
        single call at the end of the batch.
        """
        return self._in_batch

    @contextmanager
    def batch_write(self) -> Generator[None, None, None]:
        """Run several writes as one transaction.

        Acquires the write lock for the whole block.  While the context
        is active, :pyattr:`in_batch` is ``True`` and repository
        ``_commit()`` calls become no-ops.  On normal exit a single
        ``commit()`` is issued.  On exception the transaction is rolled
        back and the error re-raised.

        Example::

            with db_manager.batch_write():
                conn.execute("DELETE FROM sets WHERE owner_id = ?", (uid,))
                conn.execute("DELETE FROM users WHERE id = ?", (uid,))
            # single commit happens here
        """
        with self._write_lock:
            if self._in_batch:
                # Re-entrant: already in a batch, just yield without
                # double-committing on exit.
                yield
                return

            self._in_batch = True
            try:
                yield
                self._sqlite_conn.commit()
                self._logger.debug("Batch write committed.")
            except Exception:
                self._sqlite_conn.rollback()
                self._logger.error(
                    "Batch write rolled back due to exception.", exc_info=True,
                )
                raise
            finally:
                self._in_batch = False

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the local SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            if self._closed:
                return
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                # Connection was already closed -- nothing to do.
                pass
            self._closed = True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Union[Path, str]) -> sqlite3.Connection:
        """Open (or create) the SQLite database.

        Parameters
        ----------
        path:
            Filesystem path for the SQLite database file, or ``":memory:"``.

        Returns
        -------
        sqlite3.Connection
            A connection with ``sqlite3.Row`` rows, foreign keys enforced
            and a busy timeout so concurrent writers wait instead of
            failing.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        StorageFailure
            If SQLite cannot open or configure the file (corrupt, not a
            database, disk full).
        """
        target: str = str(path)
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = sqlite3.connect(target, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {_BUSY_TIMEOUT_MS};")
            if target != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process.  Please check file permissions and try again."
            )
            self._logger.error(msg, extra={"event": "DB_OPEN_FAILED"})
            raise PermissionError(msg) from exc
        except sqlite3.Error as exc:
            if conn is not None:
                conn.close()
            self._logger.error(
                "SQLite database at %s could not be opened: %s", path, exc,
                extra={"event": "DB_OPEN_FAILED"},
            )
            raise StorageFailure(
                "The local database could not be opened.", original_error=exc,
            ) from exc

        self._logger.info("SQLite database opened at %s", path, extra={"event": "DB_OPENED"})
        return conn
