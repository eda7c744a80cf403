"""
Pytest configuration and fixtures.

Every test gets its own SQLite file under ``tmp_path`` with the current
schema applied, a controllable clock, cheap argon2 parameters and an
in-memory token store.  Nothing touches the real home directory.
"""

from __future__ import annotations

import os

# Console-only logging; must be set before the first ``get_config()``.
os.environ.setdefault("LOG_FILE", "")

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
import pytest

from fitguard.auth import SessionManager
from fitguard.config import AppConfig
from fitguard.database import DatabaseManager
from fitguard.logger import StructuredLogger
from fitguard.repositories.user_store import UserStore
from fitguard.schema import initialize_schema
from fitguard.services.audit_log import AuditLog
from fitguard.services.auth_service import AuthService
from fitguard.services.credential_hasher import CredentialHasher
from fitguard.services.rate_limiter import RateLimiter
from fitguard.services.remote_auth import RemoteAuthClient
from fitguard.services.workouts import WorkoutService


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now: datetime = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryTokenStore:
    """Dict-backed ``SecureTokenStore`` for tests."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def set(self, key: str, value: str) -> bool:
        self.values[key] = value
        return True

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


def build_config(**overrides: object) -> AppConfig:
    settings: dict[str, object] = {
        "DATABASE_PATH": ":memory:",
        "REMOTE_AUTH_URL": "",
        "AUDIT_HMAC_KEY": "test-audit-key",
        "ARGON2_TIME_COST": 1,
        "ARGON2_MEMORY_COST": 8,
        "ARGON2_PARALLELISM": 1,
        "LOG_FILE": "",
        "UNIFY_AUTH_ERRORS": True,
    }
    settings.update(overrides)
    return AppConfig(_env_file=None, **settings)


@pytest.fixture
def config() -> AppConfig:
    return build_config()


@pytest.fixture
def logger(config: AppConfig) -> StructuredLogger:
    return StructuredLogger(name="fitguard.tests", log_file="", config=config)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "fitguard_test.db"


@pytest.fixture
def db(db_path, logger: StructuredLogger):
    manager = DatabaseManager(sqlite_path=db_path, logger=logger)
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture(autouse=True)
def fast_pbkdf2(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep PBKDF2-generation hashing cheap."""
    monkeypatch.setattr(CredentialHasher, "_PBKDF2_ITERATIONS", 1_000)


@pytest.fixture
def hasher(config: AppConfig) -> CredentialHasher:
    return CredentialHasher(config)


@pytest.fixture
def audit_log(db, logger, config, clock) -> AuditLog:
    return AuditLog(db=db, logger=logger, config=config, clock=clock)


@pytest.fixture
def rate_limiter(db, logger, config, clock) -> RateLimiter:
    return RateLimiter(db=db, logger=logger, config=config, clock=clock)


@pytest.fixture
def user_store(db, logger) -> UserStore:
    return UserStore(db=db, logger=logger)


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def session(token_store, clock) -> SessionManager:
    return SessionManager(token_store, clock=clock)


def make_remote(
    logger: StructuredLogger,
    handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
) -> RemoteAuthClient:
    """Remote client backed by *handler*, or a disabled one."""
    if handler is None:
        return RemoteAuthClient(base_url="", timeout=1.0, enabled=False, logger=logger)
    return RemoteAuthClient(
        base_url="https://auth.test/api",
        timeout=1.0,
        enabled=True,
        logger=logger,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def make_auth(config, user_store, hasher, rate_limiter, audit_log, session, logger):
    """Factory building an ``AuthService`` with an optional remote handler."""

    def _make(
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        service_config: Optional[AppConfig] = None,
        session_manager: Optional[SessionManager] = None,
    ) -> AuthService:
        return AuthService(
            config=service_config or config,
            user_store=user_store,
            hasher=hasher,
            rate_limiter=rate_limiter,
            audit_log=audit_log,
            remote=make_remote(logger, handler),
            session=session_manager or session,
            logger=logger,
        )

    return _make


@pytest.fixture
def auth(make_auth) -> AuthService:
    """Offline-only ``AuthService`` (remote disabled)."""
    return make_auth()


@pytest.fixture
def workouts(user_store, session, logger) -> WorkoutService:
    return WorkoutService(user_store=user_store, session=session, logger=logger)
