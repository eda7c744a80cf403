from __future__ import annotations

"""
Data Models Package.

Re-exports the Pydantic models and enumerations so that callers can
write ``from fitguard.models import User, HashRecord, AuditEvent``.
"""

from fitguard.models.enums import (
    AuditEventType,
    AuthPath,
    HashGeneration,
    RateLimitPhase,
    RemoteStatus,
    Severity,
)
from fitguard.models.user import HashRecord, User
from fitguard.models.audit import AuditEvent, AuditFilter, IntegrityReport
from fitguard.models.auth_models import (
    AuthErrorCode,
    AuthResult,
    FailureOutcome,
    RateLimitDecision,
    RateLimitState,
    RemoteOutcome,
    Session,
    ValidationResult,
)
from fitguard.models.workout import (
    ScopedOperation,
    ScopedQuery,
    ScopedResult,
    Workout,
    WorkoutExercise,
    WorkoutSet,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditFilter",
    "AuthErrorCode",
    "AuthPath",
    "AuthResult",
    "FailureOutcome",
    "HashGeneration",
    "HashRecord",
    "IntegrityReport",
    "RateLimitDecision",
    "RateLimitPhase",
    "RateLimitState",
    "RemoteOutcome",
    "RemoteStatus",
    "ScopedOperation",
    "ScopedQuery",
    "ScopedResult",
    "Session",
    "Severity",
    "User",
    "ValidationResult",
    "Workout",
    "WorkoutExercise",
    "WorkoutSet",
]
