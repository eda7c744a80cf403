"""
Shared Enumerations for FitGuard Models.

StrEnum values compare equal to their string equivalents, so rows read
back from SQLite (plain ``str``) can be compared directly.
"""

from __future__ import annotations
from enum import IntEnum, StrEnum


class HashGeneration(IntEnum):
    """Which hashing scheme produced a stored credential.

    Ordered oldest to newest; anything below ``CURRENT`` is migrated on
    the next successful login.  ``LEGACY_PLAINTEXT`` is not a hash at
    all: the secret itself was stored by early builds.
    """

    LEGACY_PLAINTEXT = 0
    LEGACY_SHA256 = 1
    PBKDF2_SHA256 = 2
    ARGON2ID = 3

    @classmethod
    def current(cls) -> "HashGeneration":
        return cls.ARGON2ID


class AuditEventType(StrEnum):
    """Security-relevant event categories recorded by ``AuditLog``."""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    REGISTER_SUCCESS = "register_success"
    REGISTER_FAILED = "register_failed"
    LOGOUT = "logout"
    LOCKOUT_TRIGGERED = "lockout_triggered"
    RATE_LIMITED = "rate_limited"
    PASSWORD_MIGRATED = "password_migrated"
    PASSWORD_MIGRATION_FAILED = "password_migration_failed"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_DELETED = "account_deleted"
    LEGACY_CREDENTIAL_DETECTED = "legacy_credential_detected"


class Severity(StrEnum):
    """Audit severity, ordered by :data:`SEVERITY_RANK`."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AuthPath(StrEnum):
    """Which path produced an authentication verdict."""

    REMOTE = "remote"
    LOCAL = "local"


class RemoteStatus(StrEnum):
    """Verdict of a remote authentication call."""

    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"
    ACCEPTED = "accepted"


class RateLimitPhase(StrEnum):
    """Per-identifier rate-limit state machine: CLEAR → WARNING(n) → LOCKED."""

    CLEAR = "CLEAR"
    WARNING = "WARNING"
    LOCKED = "LOCKED"
