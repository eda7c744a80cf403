"""
Application Configuration.

Pydantic Settings model for the FitGuard authentication core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Local storage ---
    DATABASE_PATH: str = "fitguard_local.db"

    # --- Remote authentication API ---
    REMOTE_AUTH_URL: str = ""
    REMOTE_AUTH_ENABLED: bool = True
    REMOTE_TIMEOUT_S: float = 10.0

    # --- Rate limiting ---
    RATE_LIMIT_MAX_FAILURES: int = Field(default=5, ge=1)
    RATE_LIMIT_LOCKOUT_S: int = Field(default=900, ge=1)  # 15 minutes
    RATE_LIMIT_INITIAL_DELAY_MS: int = Field(default=1000, ge=0)
    RATE_LIMIT_MAX_DELAY_MS: int = Field(default=8000, ge=0)

    # --- Security audit ---
    AUDIT_RETENTION_DAYS: int = Field(default=30, ge=1)
    AUDIT_SWEEP_EVERY: int = Field(default=100, ge=1)
    AUDIT_HMAC_KEY: SecretStr = SecretStr("")

    # --- Credential policy ---
    PASSWORD_MIN_LENGTH: int = Field(default=6, ge=1)
    NAME_MIN_LENGTH: int = Field(default=2, ge=1)
    UNIFY_AUTH_ERRORS: bool = True

    # --- Session ---
    SESSION_IDLE_TIMEOUT_S: int = Field(default=300, ge=0)  # 0 keeps sessions open

    # --- Password hashing ---
    # Application-wide salt of the historical SHA-256 generation.  Only
    # needed to verify (and then migrate) credentials stored by old builds.
    LEGACY_DIGEST_SALT: SecretStr = SecretStr("fitera_salt_2025")
    ARGON2_TIME_COST: int = 2
    ARGON2_MEMORY_COST: int = 19456  # KiB
    ARGON2_PARALLELISM: int = 1

    # --- Secure token store ---
    TOKEN_STORE_SALT_PATH: str = str(Path.home() / ".fitguard_store_salt")

    # --- Logging ---
    LOG_FILE: str = "fitguard.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the core is running
        with placeholder values.
        """
        _log = logging.getLogger("fitguard.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found -- all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.REMOTE_AUTH_URL:
            _log.warning(
                "REMOTE_AUTH_URL is empty -- remote authentication is disabled. "
                "Every credential decision will be made against the local store."
            )

        if self.RATE_LIMIT_MAX_DELAY_MS < self.RATE_LIMIT_INITIAL_DELAY_MS:
            raise ValueError(
                "RATE_LIMIT_MAX_DELAY_MS must be >= RATE_LIMIT_INITIAL_DELAY_MS"
            )

        return self

    @property
    def remote_enabled(self) -> bool:
        """``True`` when a remote URL is configured and not switched off."""
        return bool(self.REMOTE_AUTH_URL) and self.REMOTE_AUTH_ENABLED


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern to avoid the lock overhead on the fast path while remaining
    thread-safe during first initialisation.

    Prefer direct constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
