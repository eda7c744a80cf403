"""
Authentication Pipeline Models.

Pydantic models and enumerations for the contracts between
``AuthService``, its collaborators (remote API, rate limiter, token
store) and whatever front end drives it.

Every auth operation returns a structured, inspectable result rather
than raw strings or exception side-channels.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field

from fitguard.errors import (
    AccountLocked,
    AuthenticationError,
    DuplicateUser,
    InvalidCredentials,
    InvalidInput,
    RateLimited,
    StorageFailure,
    UserNotFound,
    WeakPassword,
)
from fitguard.models.enums import AuthPath, RateLimitPhase, RemoteStatus


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of authentication error categories."""

    VALIDATION_ERROR = "validation_error"
    WEAK_PASSWORD = "weak_password"
    USER_NOT_FOUND = "user_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    DUPLICATE_USER = "duplicate_user"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_LOCKED = "account_locked"
    NOT_AUTHENTICATED = "not_authenticated"
    STORAGE_ERROR = "storage_error"


# Human-readable messages.  Deliberately identical for the two
# rejection codes that unify under ``UNIFY_AUTH_ERRORS``.
AUTH_ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.USER_NOT_FOUND: "No account exists for this email.",
    AuthErrorCode.INVALID_CREDENTIALS: "Incorrect email or password.",
    AuthErrorCode.DUPLICATE_USER: "An account with this email already exists. Try signing in.",
    AuthErrorCode.NOT_AUTHENTICATED: "Please sign in first.",
    AuthErrorCode.STORAGE_ERROR: "Something went wrong. Please try again.",
}


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check."""

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for login, registration, logout and account
    maintenance operations.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Safe, human-readable description (``None`` on success).
    retry_after_ms:
        Remaining lockout, or the client-side throttle hint after a
        wrong password.  ``0`` when no wait applies.
    auth_path:
        Which path (remote or local) produced the verdict, when one was
        reached.
    user_id:
        Local identifier of the authenticated / registered user.
    email:
        The user's email address as registered.
    name:
        Display name.
    session_token:
        Opaque token of the session issued by a successful login or
        registration.
    """

    success: bool
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None
    retry_after_ms: int = 0
    auth_path: Optional[AuthPath] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    session_token: Optional[str] = None

    model_config = {"from_attributes": True}

    def raise_for_error(self) -> "AuthResult":
        """Raise the exception matching ``error_code`` if the operation failed.

        Returns ``self`` unchanged on success, so a caller that prefers
        exceptions can write ``auth.login(email, pw).raise_for_error()``.

        Raises
        ------
        AccountLocked, RateLimited, InvalidCredentials
            With ``wait_ms`` set from ``retry_after_ms``.
        UserNotFound, DuplicateUser, InvalidInput, WeakPassword, StorageFailure
        AuthenticationError
            For ``NOT_AUTHENTICATED``.
        """
        if self.success:
            return self

        message: str = self.error_message or "Request failed."
        code: Optional[AuthErrorCode] = self.error_code

        if code == AuthErrorCode.ACCOUNT_LOCKED:
            raise AccountLocked(message, wait_ms=self.retry_after_ms)
        if code == AuthErrorCode.RATE_LIMITED:
            raise RateLimited(message, wait_ms=self.retry_after_ms)
        if code == AuthErrorCode.INVALID_CREDENTIALS:
            raise InvalidCredentials(message, wait_ms=self.retry_after_ms)
        if code == AuthErrorCode.NOT_AUTHENTICATED:
            raise AuthenticationError(message)

        simple = {
            AuthErrorCode.VALIDATION_ERROR: InvalidInput,
            AuthErrorCode.WEAK_PASSWORD: WeakPassword,
            AuthErrorCode.USER_NOT_FOUND: UserNotFound,
            AuthErrorCode.DUPLICATE_USER: DuplicateUser,
            AuthErrorCode.STORAGE_ERROR: StorageFailure,
        }
        raise simple.get(code, StorageFailure)(message)


# ---------------------------------------------------------------------------
# Remote API contract
# ---------------------------------------------------------------------------

class RemoteUser(BaseModel):
    """The ``user`` object returned by the remote API."""

    id: str
    email: str
    username: Optional[str] = None

    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}


class RemoteAuthPayload(BaseModel):
    """Successful remote response body: ``{token, user}``."""

    token: str
    user: RemoteUser

    model_config = {"extra": "ignore"}


class RemoteOutcome(BaseModel):
    """Verdict of one remote login / registration attempt.

    ``UNAVAILABLE`` and ``REJECTED`` both send ``AuthService`` to the
    local path; the distinction is kept for the audit trail.
    """

    status: RemoteStatus
    payload: Optional[RemoteAuthPayload] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == RemoteStatus.ACCEPTED and self.payload is not None

    @property
    def accepted_payload(self) -> Optional[RemoteAuthPayload]:
        """The payload when the remote accepted, ``None`` otherwise."""
        return self.payload if self.status == RemoteStatus.ACCEPTED else None

    @classmethod
    def from_payload(cls, payload: RemoteAuthPayload, status_code: int = 200) -> "RemoteOutcome":
        return cls(status=RemoteStatus.ACCEPTED, payload=payload, status_code=status_code)

    @classmethod
    def unavailable(cls, reason: str, status_code: Optional[int] = None) -> "RemoteOutcome":
        return cls(status=RemoteStatus.UNAVAILABLE, reason=reason, status_code=status_code)

    @classmethod
    def rejected(cls, status_code: int, reason: Optional[str] = None) -> "RemoteOutcome":
        return cls(status=RemoteStatus.REJECTED, status_code=status_code, reason=reason)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session(BaseModel):
    """The single active session on this device."""

    user_id: str
    token: str
    issued_at: datetime
    last_activity: datetime

    model_config = {"frozen": True}

    def __repr__(self) -> str:
        return (
            f"Session(user_id={self.user_id!r}, issued_at={self.issued_at.isoformat()}, "
            f"last_activity={self.last_activity.isoformat()})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Rate-limit models
# ---------------------------------------------------------------------------

class RateLimitState(BaseModel):
    """Persisted per-identifier counters (one ``rate_limits`` row)."""

    identifier: str
    failure_count: int = 0
    last_failure_at: Optional[datetime] = None
    lockout_until: Optional[datetime] = None
    delay_index: int = 0


class RateLimitDecision(BaseModel):
    """Result of ``RateLimiter.check``."""

    allowed: bool
    wait_ms: int = 0
    locked: bool = False
    phase: RateLimitPhase = RateLimitPhase.CLEAR
    failure_count: int = 0
    message: str = ""


class FailureOutcome(BaseModel):
    """Result of ``RateLimiter.record_failure``."""

    is_locked: bool
    newly_locked: bool = False
    delay_ms: int = 0
    failure_count: int = 0
    remaining_attempts: int = 0
    message: str = ""


class RateLimitStats(BaseModel):
    """Snapshot for operational tooling."""

    tracked_identifiers: int = 0
    locked_identifiers: int = 0
    max_failures: int = Field(default=0)
    lockout_seconds: int = Field(default=0)
