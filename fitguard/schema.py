"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the FitGuard local database and
provides a single entry-point -- :func:`initialize_schema` -- that creates
all required tables idempotently.  A lightweight ``schema_version`` table
tracks applied migrations so that future schema changes can be rolled
forward without data loss.

Migration Strategy
~~~~~~~~~~~~~~~~~~
- **Fresh databases** (version 0): all tables are created in one shot from
  :data:`_TABLE_DEFINITIONS`.
- **Legacy databases** (version 0, but a historical ``users`` table with
  an untagged ``password`` column exists): the historical tables are
  renamed aside, the current tables created, and accounts plus their
  workouts imported.  Each stored password is classified once into a
  tagged ``HashRecord``; nothing is re-hashed here because the plaintext
  is not available.  The next successful login migrates the record.
- **Existing databases** (version N > 0): only incremental migrations
  registered in :data:`_MIGRATIONS` are executed.
- The entire upgrade (import + migrations + version bump) is wrapped in
  a single SQLite transaction.  On failure the database rolls back to
  version N and the next startup retries.

Adding a New Migration
~~~~~~~~~~~~~~~~~~~~~~
1. Bump :data:`CURRENT_SCHEMA_VERSION`.
2. Update the relevant DDL in :data:`_TABLE_DEFINITIONS` (for fresh installs).
3. Write a ``_migrate_vN_to_vN+1()`` function (use ``ALTER TABLE`` with a
   :func:`_column_exists` guard for idempotency).
4. Register the function in :data:`_MIGRATIONS`.

Usage::

    import sqlite3
    from fitguard.logger import StructuredLogger
    from fitguard.schema import initialize_schema

    conn = sqlite3.connect("fitguard_local.db")
    logger = StructuredLogger(name="fitguard.schema")
    initialize_schema(conn, logger)
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from fitguard.logger import StructuredLogger
from fitguard.models.user import HashRecord
from fitguard.utils.general import (
    from_db_timestamp,
    normalize_identifier,
    to_db_timestamp,
    utc_now,
)

__all__ = ["CURRENT_SCHEMA_VERSION", "OWNED_TABLES", "initialize_schema"]

# ---------------------------------------------------------------------------
# Schema version -- bump this whenever a migration is added.
# ---------------------------------------------------------------------------
CURRENT_SCHEMA_VERSION: int = 2

# ---------------------------------------------------------------------------
# DDL statements for every table in the local database.
# ---------------------------------------------------------------------------
_TABLE_DEFINITIONS: list[str] = [
    # -- single-row version tracker -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- local accounts -------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        email_normalized TEXT NOT NULL UNIQUE,
        hash_generation INTEGER NOT NULL CHECK (hash_generation BETWEEN 0 AND 3),
        hash_value TEXT NOT NULL,
        remote_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    # -- owned records --------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS workouts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        performed_at TEXT,
        duration_s INTEGER NOT NULL DEFAULT 0,
        notes TEXT,
        is_completed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workout_exercises (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        workout_id INTEGER NOT NULL REFERENCES workouts(id) ON DELETE CASCADE,
        exercise_name TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        workout_exercise_id INTEGER NOT NULL
            REFERENCES workout_exercises(id) ON DELETE CASCADE,
        set_number INTEGER NOT NULL,
        weight REAL,
        reps INTEGER,
        duration_s INTEGER,
        distance REAL,
        is_warmup INTEGER NOT NULL DEFAULT 0,
        is_completed INTEGER NOT NULL DEFAULT 0
    )
    """,
    # -- per-identifier throttling state --------------------------------------
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        identifier TEXT PRIMARY KEY,
        failure_count INTEGER NOT NULL DEFAULT 0,
        last_failure_at TEXT,
        lockout_until TEXT,
        delay_index INTEGER NOT NULL DEFAULT 0
    )
    """,
    # -- security audit trail -------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS security_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        subject TEXT NOT NULL,
        success INTEGER NOT NULL,
        severity TEXT NOT NULL
             CHECK (severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')),
        timestamp TEXT NOT NULL,
        auth_path TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        signature TEXT NOT NULL
    )
    """,
    # -- encrypted key/value store (session token) ----------------------------
    """
    CREATE TABLE IF NOT EXISTS secure_store (
        key TEXT PRIMARY KEY,
        ciphertext BLOB NOT NULL,
        nonce BLOB NOT NULL,
        tag BLOB NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]

_INDEX_DEFINITIONS: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_workouts_owner ON workouts(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_workout_exercises_owner ON workout_exercises(owner_id, workout_id)",
    "CREATE INDEX IF NOT EXISTS idx_sets_owner ON sets(owner_id, workout_exercise_id)",
    "CREATE INDEX IF NOT EXISTS idx_security_audit_timestamp ON security_audit(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_security_audit_subject ON security_audit(subject, event_type)",
]

OWNED_TABLES: frozenset[str] = frozenset({"workouts", "workout_exercises", "sets"})
"""Tables whose every row carries a non-null ``owner_id``."""

# Historical tables that clash with current names.  On legacy import they
# are renamed to ``legacy_<name>`` and kept for forensics.
_LEGACY_COLLIDING_TABLES: tuple[str, ...] = (
    "users",
    "workouts",
    "workout_exercises",
    "sets",
    "security_audit",
)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_version`` table if it does not yet exist.

    This is executed *before* any version check so that a brand-new
    database can be bootstrapped cleanly.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version, or ``0`` if unset.

    A return value of ``0`` indicates the database has never been
    initialised, and all tables must be created from scratch.
    """
    cursor: sqlite3.Cursor = conn.execute(
        "SELECT version FROM schema_version WHERE id = 1"
    )
    row: Optional[tuple[int]] = cursor.fetchone()
    return row[0] if row is not None else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Upsert the single-row version tracker to *version*.

    Does **not** commit -- the caller is responsible for transaction
    management so that version updates are atomic with schema changes.
    """
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version,
                                      applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def _create_all_tables(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Execute every DDL statement in :data:`_TABLE_DEFINITIONS`.

    Only used for **fresh** databases (version 0).  Each statement uses
    ``CREATE TABLE IF NOT EXISTS`` for safety.

    Does **not** commit -- the caller is responsible for transaction
    management.
    """
    for ddl in _TABLE_DEFINITIONS:
        conn.execute(ddl)
    for ddl in _INDEX_DEFINITIONS:
        conn.execute(ddl)
    logger.info(
        f"All {len(_TABLE_DEFINITIONS)} tables created or verified successfully."
    )


_ALLOWED_TABLES: frozenset[str] = frozenset({
    "schema_version",
    "users",
    "workouts",
    "workout_exercises",
    "sets",
    "rate_limits",
    "security_audit",
    "secure_store",
    "exercises",
})
"""Tables that may be referenced in dynamic PRAGMA queries.

This allowlist prevents SQL injection in :func:`_column_exists`.  Every
table defined in :data:`_TABLE_DEFINITIONS` must be listed here, plus
the historical tables inspected by the legacy import.
"""


def _column_exists(
    conn: sqlite3.Connection, table: str, column: str,
) -> bool:
    """Check whether *column* already exists in *table*.

    Raises:
        ValueError: If *table* is not in :data:`_ALLOWED_TABLES`.
    """
    if table not in _ALLOWED_TABLES:
        raise ValueError(
            f"Invalid table name: {table!r}. "
            f"Allowed tables: {sorted(_ALLOWED_TABLES)}"
        )
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _parse_legacy_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a historical ``DATETIME`` column; unparseable values become ``None``."""
    if not value:
        return None
    try:
        return from_db_timestamp(str(value))
    except ValueError:
        return None


def _is_legacy_database(conn: sqlite3.Connection) -> bool:
    """``True`` when a historical untagged ``users`` table is present."""
    return _table_exists(conn, "users") and _column_exists(conn, "users", "password")


# ---------------------------------------------------------------------------
# Legacy import
# ---------------------------------------------------------------------------

def _import_legacy_database(
    conn: sqlite3.Connection, logger: StructuredLogger,
) -> None:
    """Rebuild a historical database into the current layout.

    Accounts are imported with their stored password classified into a
    tagged record.  Workouts are imported when their historical
    ``user_id`` resolves to an imported account; rows without a
    resolvable owner are left behind in the ``legacy_*`` tables, since an
    owned record must never exist without an owner.

    Does **not** commit -- the caller is responsible for transaction
    management.
    """
    has_exercise_catalog: bool = (
        _table_exists(conn, "exercises") and _column_exists(conn, "exercises", "name")
    )

    renamed: list[str] = []
    for table in _LEGACY_COLLIDING_TABLES:
        if _table_exists(conn, table):
            conn.execute(f"ALTER TABLE {table} RENAME TO legacy_{table}")
            renamed.append(table)

    # Historical indexes keep their names after the rename.
    conn.execute("DROP INDEX IF EXISTS idx_users_email")

    _create_all_tables(conn, logger)

    now: str = to_db_timestamp(utc_now())
    user_map: dict[int, str] = {}
    exposed: int = 0
    skipped_users: int = 0

    for row in conn.execute(
        "SELECT id, name, email, password, created_at FROM legacy_users ORDER BY id"
    ).fetchall():
        email: str = (row["email"] or "").strip()
        stored: str = row["password"] or ""
        if not email or not stored:
            skipped_users += 1
            continue

        normalized: str = normalize_identifier(email)
        record = HashRecord.from_legacy(stored)
        if record.is_plaintext:
            exposed += 1

        created = _parse_legacy_time(row["created_at"])
        new_id: str = str(uuid.uuid4())
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO users
                (id, name, email, email_normalized, hash_generation,
                 hash_value, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_id,
                (row["name"] or email).strip(),
                email,
                normalized,
                int(record.generation),
                record.value,
                to_db_timestamp(created) if created else now,
                now,
            ),
        )
        if cursor.rowcount == 1:
            user_map[int(row["id"])] = new_id
        else:
            # Duplicate after case-folding; the first account wins.
            skipped_users += 1

    imported_workouts: int = 0
    if "workouts" in renamed and user_map:
        imported_workouts = _import_legacy_workouts(
            conn, user_map, renamed, has_exercise_catalog,
        )

    logger.info(
        f"Legacy import: {len(user_map)} account(s) imported, "
        f"{skipped_users} skipped, {imported_workouts} workout(s) imported.",
        extra={"event": "LEGACY_IMPORT", "exposed_credentials": exposed},
    )
    if exposed:
        logger.warning(
            f"Legacy import found {exposed} plaintext credential(s); they "
            "will be hashed on each account's next successful login.",
            extra={"event": "LEGACY_PLAINTEXT_CREDENTIALS"},
        )


def _import_legacy_workouts(
    conn: sqlite3.Connection,
    user_map: dict[int, str],
    renamed: list[str],
    has_exercise_catalog: bool,
) -> int:
    """Copy historical workouts, exercises and sets under their new owner."""
    workout_map: dict[int, tuple[int, str]] = {}
    for row in conn.execute(
        "SELECT id, user_id, name, date, duration, notes, is_completed "
        "FROM legacy_workouts ORDER BY id"
    ).fetchall():
        if row["user_id"] is None or int(row["user_id"]) not in user_map:
            continue
        owner_id: str = user_map[int(row["user_id"])]
        performed = _parse_legacy_time(row["date"])
        cursor = conn.execute(
            "INSERT INTO workouts (owner_id, name, performed_at, duration_s, notes, is_completed) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                owner_id,
                row["name"],
                to_db_timestamp(performed) if performed else None,
                int(row["duration"] or 0),
                row["notes"],
                1 if row["is_completed"] else 0,
            ),
        )
        workout_map[int(row["id"])] = (int(cursor.lastrowid), owner_id)

    if "workout_exercises" not in renamed or not workout_map:
        return len(workout_map)

    name_sql: str = (
        "SELECT we.id, we.workout_id, we.order_index, e.name AS exercise_name "
        "FROM legacy_workout_exercises we "
        "LEFT JOIN exercises e ON e.id = we.exercise_id ORDER BY we.id"
        if has_exercise_catalog
        else "SELECT id, workout_id, order_index, NULL AS exercise_name "
        "FROM legacy_workout_exercises ORDER BY id"
    )
    exercise_map: dict[int, tuple[int, str]] = {}
    for row in conn.execute(name_sql).fetchall():
        if row["workout_id"] is None or int(row["workout_id"]) not in workout_map:
            continue
        new_workout_id, owner_id = workout_map[int(row["workout_id"])]
        cursor = conn.execute(
            "INSERT INTO workout_exercises (owner_id, workout_id, exercise_name, position) "
            "VALUES (?, ?, ?, ?)",
            (
                owner_id,
                new_workout_id,
                row["exercise_name"] or "Exercise",
                int(row["order_index"] or 0),
            ),
        )
        exercise_map[int(row["id"])] = (int(cursor.lastrowid), owner_id)

    if "sets" in renamed and exercise_map:
        for row in conn.execute(
            "SELECT workout_exercise_id, set_number, weight, reps, duration, "
            "distance, is_warmup, is_completed FROM legacy_sets ORDER BY id"
        ).fetchall():
            key = row["workout_exercise_id"]
            if key is None or int(key) not in exercise_map:
                continue
            new_exercise_id, owner_id = exercise_map[int(key)]
            conn.execute(
                "INSERT INTO sets (owner_id, workout_exercise_id, set_number, weight, "
                "reps, duration_s, distance, is_warmup, is_completed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    owner_id,
                    new_exercise_id,
                    int(row["set_number"] or 0),
                    row["weight"],
                    row["reps"],
                    row["duration"],
                    row["distance"],
                    1 if row["is_warmup"] else 0,
                    1 if row["is_completed"] else 0,
                ),
            )

    return len(workout_map)


def _migrate_v1_to_v2(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Add indexes for owner-scoped reads and audit retention sweeps.

    All statements use ``CREATE INDEX IF NOT EXISTS`` for idempotency.

    Does **not** commit -- the caller is responsible for transaction
    management.
    """
    for stmt in _INDEX_DEFINITIONS:
        conn.execute(stmt)

    logger.info(
        f"Migration v1→v2: created {len(_INDEX_DEFINITIONS)} indexes."
    )


# ---------------------------------------------------------------------------
# Migration registry -- maps *target* version to its migration function.
# ---------------------------------------------------------------------------

MigrationFunc = Callable[[sqlite3.Connection, StructuredLogger], None]

_MIGRATIONS: dict[int, MigrationFunc] = {
    2: _migrate_v1_to_v2,
}


def _run_incremental_migrations(
    conn: sqlite3.Connection,
    logger: StructuredLogger,
    from_version: int,
    to_version: int,
) -> None:
    """Run all registered migrations between *from_version* and *to_version*.

    Migrations are executed in ascending version order.  Only versions
    in the half-open range ``(from_version, to_version]`` are applied.
    Each migration function must be idempotent.

    Does **not** commit -- the caller is responsible for transaction
    management.
    """
    versions_to_apply: list[int] = sorted(
        v for v in _MIGRATIONS if from_version < v <= to_version
    )

    if not versions_to_apply:
        logger.info("No incremental migrations to apply.")
        return

    logger.info(
        f"Applying {len(versions_to_apply)} migration(s): "
        f"{' → '.join(str(v) for v in versions_to_apply)}"
    )
    for version in versions_to_apply:
        logger.info(f"Running migration to version {version} …")
        _MIGRATIONS[version](conn, logger)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Ensure the local SQLite database matches the current schema version.

    Workflow:
        1. Guarantee the ``schema_version`` table exists (separate commit).
        2. Read the stored version number (``0`` for a fresh database).
        3. If the stored version equals or exceeds
           :data:`CURRENT_SCHEMA_VERSION`, return immediately.
        4. Otherwise, upgrade within a **single atomic transaction**:

           - **Legacy database** (version 0 with a historical ``users``
             table): import accounts and workouts.
           - **Fresh database** (version 0): create all tables from
             :data:`_TABLE_DEFINITIONS`.
           - **Existing database** (version N > 0): run incremental
             migrations from :data:`_MIGRATIONS` for versions in
             ``(N, CURRENT_SCHEMA_VERSION]``.
           - Update the version tracker.
           - Commit.  On failure the entire upgrade is rolled back so the
             version number stays at N and the next startup retries.

    This function is designed to be called on every application startup
    and is fully idempotent.

    Args:
        conn: An open SQLite connection with ``row_factory`` set to
            ``sqlite3.Row``.
        logger: A :class:`~fitguard.logger.StructuredLogger` instance for
            structured log output.
    """
    _ensure_version_table(conn)
    current: int = _get_schema_version(conn)

    if current >= CURRENT_SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current}).")
        return

    logger.info(
        f"Upgrading schema from version {current} "
        f"to {CURRENT_SCHEMA_VERSION} …"
    )

    try:
        # DDL does not open an implicit transaction; make the whole
        # upgrade (renames included) roll back as one unit.
        conn.execute("BEGIN")
        if current == 0 and _is_legacy_database(conn):
            _import_legacy_database(conn, logger)
        elif current == 0:
            _create_all_tables(conn, logger)
        else:
            _run_incremental_migrations(
                conn, logger, current, CURRENT_SCHEMA_VERSION,
            )

        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error(
            f"Schema migration failed -- rolled back to version {current}."
        )
        raise

    logger.info(f"Schema initialised at version {CURRENT_SCHEMA_VERSION}.")
