"""Tests for schema creation, versioned migration and legacy import."""

from __future__ import annotations

import hashlib
import sqlite3

import pytest

from fitguard.auth import SessionManager
from fitguard.database import DatabaseManager
from fitguard.models.enums import AuditEventType, HashGeneration
from fitguard.models.audit import AuditFilter
from fitguard.schema import CURRENT_SCHEMA_VERSION, initialize_schema
from fitguard.services import create_services
from tests.conftest import InMemoryTokenStore, build_config

_LEGACY_DDL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT,
    weight REAL,
    height REAL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    password TEXT
);
CREATE UNIQUE INDEX idx_users_email ON users(email);
CREATE TABLE exercises (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL
);
CREATE TABLE workouts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    name TEXT NOT NULL,
    date DATETIME DEFAULT CURRENT_TIMESTAMP,
    duration INTEGER DEFAULT 0,
    notes TEXT,
    is_completed BOOLEAN DEFAULT 0,
    FOREIGN KEY (user_id) REFERENCES users (id)
);
CREATE TABLE workout_exercises (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workout_id INTEGER,
    exercise_id INTEGER,
    order_index INTEGER,
    FOREIGN KEY (workout_id) REFERENCES workouts (id)
);
CREATE TABLE sets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workout_exercise_id INTEGER,
    set_number INTEGER,
    weight REAL,
    reps INTEGER,
    duration INTEGER,
    distance REAL,
    is_completed BOOLEAN DEFAULT 0,
    is_warmup BOOLEAN DEFAULT 0
);
"""

SHA_PASSWORD = "shapass1"


def build_legacy_database(path) -> None:
    digest = hashlib.sha256(f"{SHA_PASSWORD}fitera_salt_2025".encode()).hexdigest()
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(_LEGACY_DDL)
        conn.executemany(
            "INSERT INTO users (id, name, email, password, created_at) VALUES (?, ?, ?, ?, ?)",
            [
                (1, "Pat", "Pat@X.com", "plainpw1", "2024-05-01 10:00:00"),
                (2, "Sam", "sam@x.com", digest, "2024-06-01 09:30:00"),
                (3, "Pat again", "PAT@x.com", "otherpw", None),
                (4, "No password", "nopw@x.com", None, None),
            ],
        )
        conn.execute("INSERT INTO exercises (id, name) VALUES (1, 'Squat')")
        conn.executemany(
            "INSERT INTO workouts (id, user_id, name, date, duration, is_completed) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (1, 1, "Leg day", "2024-05-02 18:00:00", 3600, 1),
                (2, 99, "Orphan", "2024-05-03 18:00:00", 0, 0),
            ],
        )
        conn.execute(
            "INSERT INTO workout_exercises (id, workout_id, exercise_id, order_index) "
            "VALUES (1, 1, 1, 0)"
        )
        conn.executemany(
            "INSERT INTO sets (workout_exercise_id, set_number, weight, reps, is_warmup) "
            "VALUES (?, ?, ?, ?, ?)",
            [(1, 1, 60.0, 10, 1), (1, 2, 100.0, 5, 0)],
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def legacy_db(tmp_path, logger):
    path = tmp_path / "legacy.db"
    build_legacy_database(path)
    manager = DatabaseManager(sqlite_path=path, logger=logger)
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


def count(db, table: str) -> int:
    return db.sqlite.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def version(db) -> int:
    return db.sqlite.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()[0]


class TestFreshDatabase:
    def test_tables_created_at_current_version(self, db) -> None:
        names = {
            row[0]
            for row in db.sqlite.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {
            "users", "workouts", "workout_exercises", "sets",
            "rate_limits", "security_audit", "secure_store", "schema_version",
        } <= names
        assert version(db) == CURRENT_SCHEMA_VERSION

    def test_rerun_is_a_no_op(self, db, logger) -> None:
        initialize_schema(db.sqlite, logger)
        initialize_schema(db.sqlite, logger)
        assert version(db) == CURRENT_SCHEMA_VERSION

    def test_incremental_migration_adds_indexes(self, db, logger) -> None:
        with db.write_lock:
            db.sqlite.execute("DROP INDEX idx_workouts_owner")
            db.sqlite.execute("UPDATE schema_version SET version = 1 WHERE id = 1")
            db.sqlite.commit()

        initialize_schema(db.sqlite, logger)
        indexes = {
            row[0]
            for row in db.sqlite.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        assert "idx_workouts_owner" in indexes
        assert version(db) == CURRENT_SCHEMA_VERSION


class TestLegacyImport:
    def test_accounts_are_imported_once_each(self, legacy_db) -> None:
        rows = legacy_db.sqlite.execute(
            "SELECT email, email_normalized, hash_generation, hash_value FROM users "
            "ORDER BY email_normalized"
        ).fetchall()
        assert [r["email_normalized"] for r in rows] == ["pat@x.com", "sam@x.com"]

        pat, sam = rows
        assert pat["email"] == "Pat@X.com"
        assert pat["hash_generation"] == int(HashGeneration.LEGACY_PLAINTEXT)
        assert sam["hash_generation"] == int(HashGeneration.LEGACY_SHA256)

    def test_owned_records_follow_their_owner(self, legacy_db) -> None:
        owner = legacy_db.sqlite.execute(
            "SELECT id FROM users WHERE email_normalized = 'pat@x.com'"
        ).fetchone()["id"]

        [workout] = legacy_db.sqlite.execute("SELECT * FROM workouts").fetchall()
        assert workout["owner_id"] == owner
        assert workout["name"] == "Leg day"
        assert workout["duration_s"] == 3600
        assert workout["is_completed"] == 1

        [exercise] = legacy_db.sqlite.execute("SELECT * FROM workout_exercises").fetchall()
        assert exercise["exercise_name"] == "Squat"
        assert exercise["owner_id"] == owner
        assert exercise["workout_id"] == workout["id"]

        sets = legacy_db.sqlite.execute("SELECT * FROM sets ORDER BY set_number").fetchall()
        assert [s["owner_id"] for s in sets] == [owner, owner]
        assert [s["is_warmup"] for s in sets] == [1, 0]

    def test_historical_tables_are_kept_aside(self, legacy_db) -> None:
        assert count(legacy_db, "legacy_users") == 4
        assert count(legacy_db, "legacy_workouts") == 2
        assert version(legacy_db) == CURRENT_SCHEMA_VERSION

    def test_import_is_not_repeated(self, legacy_db, logger) -> None:
        initialize_schema(legacy_db.sqlite, logger)
        assert count(legacy_db, "users") == 2
        assert count(legacy_db, "workouts") == 1

    @pytest.mark.parametrize(
        "email,password,generation",
        [
            ("pat@x.com", "plainpw1", HashGeneration.LEGACY_PLAINTEXT),
            ("SAM@x.com", SHA_PASSWORD, HashGeneration.LEGACY_SHA256),
        ],
    )
    def test_imported_accounts_migrate_on_login(
        self, legacy_db, clock, email, password, generation,
    ) -> None:
        session = SessionManager(InMemoryTokenStore(), clock=clock)
        services = create_services(legacy_db, build_config(), session, clock=clock)
        auth = services["auth_service"]
        try:
            assert auth.login(email, password).success is True

            user = services["user_store"].find_by_normalized_email(email)
            assert user.hash_record.generation == HashGeneration.ARGON2ID

            [event] = services["audit_log"].query(
                AuditFilter(event_types=[AuditEventType.PASSWORD_MIGRATED])
            )
            assert event.metadata["from_generation"] == generation.name

            # Owned records are reachable through the migrated account.
            if generation == HashGeneration.LEGACY_PLAINTEXT:
                names = [w.name for w in services["workout_service"].list_workouts().data]
                assert names == ["Leg day"]
        finally:
            services["remote_auth"].close()
