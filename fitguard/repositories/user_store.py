"""
User Store.

The only component permitted to read or write accounts and the records
they own.  Two halves:

- **Accounts** (``users`` table): lookup by normalised email, creation
  with case-insensitive uniqueness, password-hash rotation, remote
  provisioning and self-service deletion.
- **Owned records** (``workouts``, ``workout_exercises``, ``sets``):
  reachable exclusively through :meth:`UserStore.run_scoped`, which
  ANDs ``owner_id = <authenticated user>`` into every statement it
  builds.

Every statement is parameterised.  Table and column names never come
from callers verbatim; they are checked against a fixed allow-list, so
an injection attempt either fails the allow-list (a programming error)
or is bound as a plain value and matches nothing.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Optional

from fitguard.errors import DuplicateUser, InvalidInput, IsolationViolation, StorageFailure
from fitguard.models.enums import HashGeneration
from fitguard.models.user import HashRecord, User
from fitguard.models.workout import ColumnValue, ScopedOperation, ScopedQuery, ScopedResult
from fitguard.repositories.base_repository import BaseRepository
from fitguard.schema import OWNED_TABLES
from fitguard.utils.general import (
    from_db_timestamp,
    normalize_identifier,
    to_db_timestamp,
    utc_now,
)

# ---------------------------------------------------------------------------
# Owned-table allow-list
# ---------------------------------------------------------------------------

_OWNED_COLUMNS: dict[str, frozenset[str]] = {
    "workouts": frozenset({
        "id", "owner_id", "name", "performed_at", "duration_s", "notes",
        "is_completed",
    }),
    "workout_exercises": frozenset({
        "id", "owner_id", "workout_id", "exercise_name", "position",
    }),
    "sets": frozenset({
        "id", "owner_id", "workout_exercise_id", "set_number", "weight",
        "reps", "duration_s", "distance", "is_warmup", "is_completed",
    }),
}

# child table -> (foreign-key column, parent table)
_PARENTS: dict[str, tuple[str, str]] = {
    "workout_exercises": ("workout_id", "workouts"),
    "sets": ("workout_exercise_id", "workout_exercises"),
}

# Deletion order for account removal: children first.
_OWNED_DELETE_ORDER: tuple[str, ...] = ("sets", "workout_exercises", "workouts")

_USER_COLUMNS: str = (
    "id, name, email, email_normalized, hash_generation, hash_value, "
    "remote_id, created_at, updated_at"
)


class UserStore(BaseRepository):
    """Data access layer for accounts and owner-scoped records."""

    TABLE = "users"

    # ==================================================================
    # Accounts
    # ==================================================================

    def find_by_normalized_email(self, email: str) -> Optional[User]:
        """Case-insensitive exact lookup.  At most one account matches."""
        normalized: str = normalize_identifier(email)
        if not normalized:
            return None

        def _op() -> Optional[User]:
            row = self.sqlite.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email_normalized = ?",
                (normalized,),
            ).fetchone()
            return self._row_to_user(row) if row else None

        return self._run(_op, operation_name="find_by_normalized_email (users)")

    def get_by_id(self, user_id: str) -> Optional[User]:
        def _op() -> Optional[User]:
            row = self.sqlite.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,),
            ).fetchone()
            return self._row_to_user(row) if row else None

        return self._run(_op, operation_name="get_by_id (users)")

    def create(
        self,
        name: str,
        email: str,
        hash_record: HashRecord,
        remote_id: Optional[str] = None,
    ) -> User:
        """Insert a new account.

        Raises
        ------
        InvalidInput
            If *name* or *email* is empty after trimming.
        DuplicateUser
            If an account with the same normalised email exists.
        StorageFailure
            On any other storage error.
        """
        clean_name: str = (name or "").strip()
        clean_email: str = (email or "").strip()
        if not clean_name or not clean_email:
            raise InvalidInput("Name and email are required.")

        user = User(
            id=str(uuid.uuid4()),
            name=clean_name,
            email=clean_email,
            email_normalized=normalize_identifier(clean_email),
            hash_record=hash_record,
            remote_id=remote_id,
            created_at=utc_now(),
        )

        def _op() -> None:
            self.sqlite.execute(
                f"""
                INSERT INTO users ({_USER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.name,
                    user.email,
                    user.email_normalized,
                    int(hash_record.generation),
                    hash_record.value,
                    user.remote_id,
                    to_db_timestamp(user.created_at),
                    None,
                ),
            )
            self._commit()

        try:
            self._run(_op, operation_name="create (users)")
        except sqlite3.IntegrityError as exc:
            raise DuplicateUser("An account with this email already exists.") from exc

        self._logger.info(
            "Local account created.",
            extra={"event": "USER_CREATED", "user_id": user.id},
        )
        return user

    def update_password_hash(
        self,
        user_id: str,
        new_record: HashRecord,
        expected: Optional[HashRecord] = None,
    ) -> bool:
        """Rotate the stored credential of *user_id*.

        When *expected* is given the update only applies if the stored
        record still equals it, so two concurrent migrations of the same
        account cannot clobber each other; re-running a migration that
        already happened is a no-op.

        Returns
        -------
        bool
            ``True`` if a row was updated.
        """
        now: str = to_db_timestamp(utc_now())

        def _op() -> int:
            if expected is None:
                cursor = self.sqlite.execute(
                    "UPDATE users SET hash_generation = ?, hash_value = ?, updated_at = ? "
                    "WHERE id = ?",
                    (int(new_record.generation), new_record.value, now, user_id),
                )
            else:
                cursor = self.sqlite.execute(
                    "UPDATE users SET hash_generation = ?, hash_value = ?, updated_at = ? "
                    "WHERE id = ? AND hash_generation = ? AND hash_value = ?",
                    (
                        int(new_record.generation),
                        new_record.value,
                        now,
                        user_id,
                        int(expected.generation),
                        expected.value,
                    ),
                )
            self._commit()
            return cursor.rowcount

        return self._run(_op, operation_name="update_password_hash (users)") == 1

    def upsert_remote_user(
        self,
        email: str,
        name: Optional[str],
        remote_id: Optional[str],
        hash_record: HashRecord,
    ) -> User:
        """Create or refresh the local mirror of a remotely-accepted account.

        Called after the remote API accepted a login or registration, so
        that later offline logins with the same password succeed.
        """
        existing: Optional[User] = self.find_by_normalized_email(email)
        if existing is None:
            display_name: str = (name or "").strip() or email.strip().split("@", 1)[0]
            try:
                return self.create(display_name, email, hash_record, remote_id=remote_id)
            except DuplicateUser:
                # Created concurrently; fall through to the update path.
                existing = self.find_by_normalized_email(email)
                if existing is None:
                    raise

        now: str = to_db_timestamp(utc_now())
        new_name: str = (name or "").strip() or existing.name

        def _op() -> None:
            self.sqlite.execute(
                "UPDATE users SET name = ?, remote_id = COALESCE(?, remote_id), "
                "hash_generation = ?, hash_value = ?, updated_at = ? WHERE id = ?",
                (
                    new_name,
                    remote_id,
                    int(hash_record.generation),
                    hash_record.value,
                    now,
                    existing.id,
                ),
            )
            self._commit()

        self._run(_op, operation_name="upsert_remote_user (users)")
        refreshed: Optional[User] = self.get_by_id(existing.id)
        if refreshed is None:
            raise StorageFailure("Provisioned account vanished during upsert.")
        return refreshed

    def delete_account(self, user_id: str) -> dict[str, int]:
        """Delete every owned record of *user_id* and the account itself,
        in one transaction.

        Returns
        -------
        dict[str, int]
            Rows removed per table.
        """
        removed: dict[str, int] = {}
        with self._db.batch_write():
            for table in _OWNED_DELETE_ORDER:
                result = self.run_scoped(
                    user_id, ScopedQuery(table=table, operation=ScopedOperation.DELETE),
                )
                removed[table] = result.rowcount
            removed["users"] = self._run(
                lambda: self.sqlite.execute(
                    "DELETE FROM users WHERE id = ?", (user_id,),
                ).rowcount,
                operation_name="delete_account (users)",
            )
        self._logger.info(
            "Account deleted.",
            extra={"event": "USER_DELETED", "user_id": user_id},
        )
        return removed

    # ==================================================================
    # Owned records
    # ==================================================================

    def run_scoped(self, owner_id: str, query: ScopedQuery) -> ScopedResult:
        """Execute *query* against an owned table, scoped to *owner_id*.

        The owner condition is always ANDed into the statement, so a row
        owned by anyone else can never be read, changed or deleted, and
        a filter naming another owner simply matches nothing.  Inserts
        always carry ``owner_id = owner``; a child row is only inserted
        when its parent row belongs to the same owner.

        Raises
        ------
        IsolationViolation
            If *owner_id* is empty, the table is not an owned table, a
            column is outside the allow-list, or the values try to
            assign a different owner.
        InvalidInput
            If the query is malformed (no values for a write, a
            constraint violation).
        StorageFailure
            On any other storage error.
        """
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise IsolationViolation("Owned-record access requires an authenticated owner id.")
        if query.table not in OWNED_TABLES or query.table not in _OWNED_COLUMNS:
            raise IsolationViolation(f"Table {query.table!r} is not an owned-record table.")

        allowed: frozenset[str] = _OWNED_COLUMNS[query.table]
        for column in (*query.filters, *query.values):
            if column not in allowed:
                raise IsolationViolation(
                    f"Column {column!r} is not accessible on {query.table!r}."
                )
        if query.order_by is not None and query.order_by not in allowed:
            raise IsolationViolation(f"Cannot order by {query.order_by!r}.")

        values: dict[str, ColumnValue] = dict(query.values)
        if "owner_id" in values:
            if values["owner_id"] != owner_id:
                raise IsolationViolation("Cannot assign a record to another owner.")
            del values["owner_id"]

        where_sql, where_params = self._owner_where(owner_id, query.filters)

        if query.operation == ScopedOperation.SELECT:
            op = self._scoped_select(query, where_sql, where_params)
        elif query.operation == ScopedOperation.INSERT:
            op = self._scoped_insert(owner_id, query.table, values)
        elif query.operation == ScopedOperation.UPDATE:
            op = self._scoped_update(owner_id, query.table, values, where_sql, where_params)
        else:
            op = self._scoped_delete(query.table, where_sql, where_params)

        try:
            return self._run(op, operation_name=f"run_scoped {query.operation} ({query.table})")
        except sqlite3.IntegrityError as exc:
            raise InvalidInput(f"Constraint violation on {query.table}: {exc}") from exc

    # ------------------------------------------------------------------
    # Scoped statement builders
    # ------------------------------------------------------------------

    @staticmethod
    def _owner_where(
        owner_id: str, filters: dict[str, ColumnValue],
    ) -> tuple[str, list[ColumnValue]]:
        clauses: list[str] = ["owner_id = ?"]
        params: list[ColumnValue] = [owner_id]
        for column, value in filters.items():
            clauses.append(f"{column} IS ?" if value is None else f"{column} = ?")
            params.append(value)
        return " AND ".join(clauses), params

    def _scoped_select(self, query: ScopedQuery, where_sql: str, where_params: list[ColumnValue]):
        columns: str = ", ".join(sorted(_OWNED_COLUMNS[query.table]))
        sql: str = f"SELECT {columns} FROM {query.table} WHERE {where_sql}"
        params: list[ColumnValue] = list(where_params)
        sql += f" ORDER BY {query.order_by or 'id'}"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        def _op() -> ScopedResult:
            rows = self.sqlite.execute(sql, params).fetchall()
            return ScopedResult(rows=[dict(row) for row in rows], rowcount=len(rows))

        return _op

    def _scoped_insert(self, owner_id: str, table: str, values: dict[str, ColumnValue]):
        if not values:
            raise InvalidInput("An insert needs at least one value.")
        if "id" in values:
            raise InvalidInput("Record ids are assigned by the store.")

        columns: list[str] = ["owner_id", *values]
        params: list[ColumnValue] = [owner_id, *values.values()]
        placeholders: str = ", ".join("?" for _ in columns)

        parent = _PARENTS.get(table)
        if parent is None:
            sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        else:
            fk_column, parent_table = parent
            if values.get(fk_column) is None:
                raise InvalidInput(f"{fk_column} is required.")
            # Insert only when the parent row belongs to the same owner.
            sql = (
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"SELECT {placeholders} WHERE EXISTS ("
                f"SELECT 1 FROM {parent_table} WHERE id = ? AND owner_id = ?)"
            )
            params.extend([values[fk_column], owner_id])

        def _op() -> ScopedResult:
            cursor = self.sqlite.execute(sql, params)
            self._commit()
            if cursor.rowcount < 1:
                return ScopedResult(rowcount=0)
            return ScopedResult(rowcount=cursor.rowcount, last_insert_id=cursor.lastrowid)

        return _op

    def _scoped_update(
        self,
        owner_id: str,
        table: str,
        values: dict[str, ColumnValue],
        where_sql: str,
        where_params: list[ColumnValue],
    ):
        if not values:
            raise InvalidInput("An update needs at least one value.")
        if "id" in values:
            raise InvalidInput("Record ids cannot be changed.")

        assignments: str = ", ".join(f"{column} = ?" for column in values)
        params: list[ColumnValue] = [*values.values(), *where_params]
        sql: str = f"UPDATE {table} SET {assignments} WHERE {where_sql}"

        parent = _PARENTS.get(table)
        if parent is not None and parent[0] in values:
            fk_column, parent_table = parent
            sql += (
                f" AND EXISTS (SELECT 1 FROM {parent_table} "
                f"WHERE id = ? AND owner_id = ?)"
            )
            params.extend([values[fk_column], owner_id])

        def _op() -> ScopedResult:
            cursor = self.sqlite.execute(sql, params)
            self._commit()
            return ScopedResult(rowcount=cursor.rowcount)

        return _op

    def _scoped_delete(self, table: str, where_sql: str, where_params: list[ColumnValue]):
        sql: str = f"DELETE FROM {table} WHERE {where_sql}"

        def _op() -> ScopedResult:
            cursor = self.sqlite.execute(sql, where_params)
            self._commit()
            return ScopedResult(rowcount=cursor.rowcount)

        return _op

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            email_normalized=row["email_normalized"],
            hash_record=HashRecord(
                generation=HashGeneration(int(row["hash_generation"])),
                value=row["hash_value"],
            ),
            remote_id=row["remote_id"],
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
