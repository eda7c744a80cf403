"""
Error Taxonomy.

Exception classes raised by the hashing, storage and rate-limit layers.
``AuthService`` catches these at its boundary and converts them into
typed ``AuthResult`` responses, so callers above the service never
inspect raw exceptions.
"""

from __future__ import annotations

from typing import Optional


class FitGuardError(Exception):
    """Base class for every error raised by the authentication core."""

    def __init__(self, message: str) -> None:
        self.message: str = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Validation (recoverable, user-correctable)
# ---------------------------------------------------------------------------

class ValidationFailed(FitGuardError):
    """Input has the wrong shape (empty, too short, unprintable)."""


class InvalidInput(ValidationFailed):
    """A required value is empty or not representable as text."""


class WeakPassword(ValidationFailed):
    """The password does not satisfy the minimum policy."""


# ---------------------------------------------------------------------------
# Authentication rejections (recoverable, user-correctable)
# ---------------------------------------------------------------------------

class AuthRejected(FitGuardError):
    """The credentials were checked and refused."""


class UserNotFound(AuthRejected):
    """No account exists for the normalised identifier."""


class InvalidCredentials(AuthRejected):
    """The password did not match the stored credential."""

    def __init__(self, message: str, wait_ms: int = 0) -> None:
        super().__init__(message)
        self.wait_ms: int = wait_ms


class DuplicateUser(AuthRejected):
    """An account already exists for the (case-insensitive) email."""


# ---------------------------------------------------------------------------
# Throttling (recoverable after a wait)
# ---------------------------------------------------------------------------

class RateLimited(FitGuardError):
    """The caller must wait ``wait_ms`` before the next attempt."""

    def __init__(self, message: str, wait_ms: int) -> None:
        super().__init__(message)
        self.wait_ms: int = wait_ms


class AccountLocked(RateLimited):
    """Attempts for the identifier are refused until the lockout expires."""

    @property
    def remaining_ms(self) -> int:
        return self.wait_ms


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class RemoteUnavailable(FitGuardError):
    """The remote authentication API could not produce a verdict.

    Internal only: it triggers the local fallback and is never
    surfaced to the caller.
    """

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.status_code: Optional[int] = status_code


class StorageFailure(FitGuardError):
    """The local storage engine failed.

    Wraps the original ``sqlite3.Error`` so that the full context can be
    logged while the caller only sees a generic failure.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.original_error: Optional[Exception] = original_error


class AuditWriteFailure(FitGuardError):
    """An audit event could not be persisted.  Never propagated."""


class IsolationViolation(RuntimeError):
    """A code path tried to touch owned records without a valid owner scope.

    This is a programming error, not a recoverable condition, hence a
    ``RuntimeError`` rather than a ``FitGuardError``.
    """


class AuthenticationError(RuntimeError):
    """Raised when a guarded function is called without an active session."""
