"""
Authentication Service.

Single orchestrator for every authentication decision: login,
registration, logout, password change and account deletion.

Login runs remote-first with an unconditional local fallback::

    RateLimiter.check ──locked──▶ ACCOUNT_LOCKED (no credential comparison)
          │
          ▼
    RemoteAuthClient.login ──ACCEPTED──▶ provision locally, issue session
          │ UNAVAILABLE / REJECTED
          ▼
    UserStore.find_by_normalized_email ──absent──▶ record_failure
          │
          ▼
    CredentialHasher.verify ──mismatch──▶ record_failure (maybe lock)
          │ match
          ▼
    migrate hash if needed, issue session, record_success

A session that times out through inactivity is audited as a ``logout``
with ``reason=timeout``.

Every collaborator is injected.  All methods return typed
``AuthResult`` or ``ValidationResult`` models: callers never inspect
raw exceptions.
"""

from __future__ import annotations

import re
import secrets
import threading
from typing import Optional, Union

from fitguard.auth import SessionManager
from fitguard.config import AppConfig
from fitguard.errors import DuplicateUser, InvalidInput, StorageFailure
from fitguard.logger import StructuredLogger
from fitguard.models.auth_models import (
    AUTH_ERROR_MESSAGES,
    AuthErrorCode,
    AuthResult,
    FailureOutcome,
    RemoteAuthPayload,
    RemoteOutcome,
    Session,
    ValidationResult,
)
from fitguard.models.enums import AuditEventType, AuthPath, Severity
from fitguard.models.user import HashRecord, User
from fitguard.repositories.user_store import UserStore
from fitguard.services.audit_log import AuditLog
from fitguard.services.credential_hasher import CredentialHasher
from fitguard.services.rate_limiter import RateLimiter
from fitguard.services.remote_auth import RemoteAuthClient
from fitguard.utils.general import normalize_identifier


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

# Matches C0 controls (U+0000 to U+001F), DEL (U+007F), and C1 controls (U+0080 to U+009F).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_ANONYMOUS_SUBJECT: str = "anonymous"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthService:
    """Centralised authentication service.

    Receives all infrastructure dependencies via ``__init__`` and
    exposes pure request → result methods for every auth flow.

    Parameters
    ----------
    config:
        Password / name policy and the enumeration setting.
    user_store:
        Local accounts.
    hasher:
        Generation-aware password hashing.
    rate_limiter:
        Per-identifier failure throttle.
    audit_log:
        Security audit trail.
    remote:
        Remote authentication client (may be disabled).
    session:
        Holder of the single active session.
    logger:
        Structured JSON logger.
    """

    def __init__(
        self,
        config: AppConfig,
        user_store: UserStore,
        hasher: CredentialHasher,
        rate_limiter: RateLimiter,
        audit_log: AuditLog,
        remote: RemoteAuthClient,
        session: SessionManager,
        logger: StructuredLogger,
    ) -> None:
        self._users: UserStore = user_store
        self._hasher: CredentialHasher = hasher
        self._rate_limiter: RateLimiter = rate_limiter
        self._audit: AuditLog = audit_log
        self._remote: RemoteAuthClient = remote
        self._session: SessionManager = session
        self._logger: StructuredLogger = logger

        self._password_min_length: int = config.PASSWORD_MIN_LENGTH
        self._name_min_length: int = config.NAME_MIN_LENGTH
        self._unify_errors: bool = config.UNIFY_AUTH_ERRORS

        # Decoy credential verified when no account exists, so that the
        # not-found path costs as much as a wrong password.
        self._decoy: Optional[HashRecord] = None
        self._decoy_lock: threading.Lock = threading.Lock()

        session.add_expiry_listener(self._on_session_expired)

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate an email address against a simplified RFC 5322 regex.

        Parameters
        ----------
        email:
            The raw email string to validate.

        Returns
        -------
        ValidationResult
            ``is_valid=True`` if the email matches, otherwise a
            human-readable ``error_message``.
        """
        if not email or not email.strip():
            return ValidationResult(
                is_valid=False,
                error_message="Email address is required.",
            )
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False,
                error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    def validate_password(self, password: str) -> ValidationResult:
        """Enforce the minimum password policy: non-empty and at least
        ``PASSWORD_MIN_LENGTH`` characters."""
        if not password:
            return ValidationResult(
                is_valid=False,
                error_message="Password is required.",
            )
        if len(password) < self._password_min_length:
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"Password must be at least {self._password_min_length} characters."
                ),
            )
        return ValidationResult(is_valid=True)

    def validate_name(self, name: str, field_label: str = "Name") -> ValidationResult:
        """Validate a display name.

        Rejects control characters (including newlines and tabs) to
        prevent log injection and display corruption.

        Parameters
        ----------
        name:
            The raw name string.
        field_label:
            Human label for the error message.

        Returns
        -------
        ValidationResult
        """
        stripped = (name or "").strip()
        if not stripped:
            return ValidationResult(
                is_valid=False,
                error_message=f"{field_label} is required.",
            )
        if len(stripped) < self._name_min_length:
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} must be at least {self._name_min_length} characters."
                ),
            )
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Normalise an email address: strip whitespace and case-fold."""
        return normalize_identifier(email or "")

    # ==================================================================
    # Login
    # ==================================================================

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate a user, remote-first with local fallback.

        Parameters
        ----------
        email:
            The raw email entered by the user.
        password:
            The raw password entered by the user.

        Returns
        -------
        AuthResult
            ``success=True`` with the session token, or a structured
            error.  ``retry_after_ms`` carries the remaining lockout or
            the client-side throttle hint.
        """
        identifier: str = self.normalize_email(email)
        if not identifier or not password:
            return self._failure(
                AuthErrorCode.VALIDATION_ERROR,
                "Email and password are required.",
            )

        try:
            return self._login(identifier, password)
        except InvalidInput as exc:
            return self._failure(AuthErrorCode.VALIDATION_ERROR, exc.message)
        except StorageFailure as exc:
            return self._storage_error("login", identifier, exc)

    def _login(self, identifier: str, password: str) -> AuthResult:
        # --- Rate-limit gate: no credential comparison while locked ---
        decision = self._rate_limiter.check(identifier)
        if decision.locked:
            self._audit.log(
                AuditEventType.RATE_LIMITED,
                identifier,
                success=False,
                severity=Severity.MEDIUM,
                metadata={"remaining_ms": decision.wait_ms, "operation": "login"},
            )
            return self._failure(
                AuthErrorCode.ACCOUNT_LOCKED,
                decision.message,
                retry_after_ms=decision.wait_ms,
            )

        # --- Remote attempt ---
        outcome: RemoteOutcome = self._remote.login(identifier, password)
        payload: Optional[RemoteAuthPayload] = outcome.accepted_payload
        if payload is not None:
            return self._complete_remote(
                AuditEventType.LOGIN_SUCCESS, identifier, identifier, password, payload,
            )
        self._logger.debug(
            "Remote login not accepted (%s); using local store.", outcome.status,
            extra={"event": "LOCAL_FALLBACK", "reason": outcome.reason or ""},
        )
        remote_context = {"remote_status": str(outcome.status)}

        # --- Local path ---
        user: Optional[User] = self._users.find_by_normalized_email(identifier)
        if user is None:
            # Equalise timing with the wrong-password branch.
            self._hasher.verify(password, self._decoy_record())
            failure = self._rate_limiter.record_failure(identifier)
            self._audit.log(
                AuditEventType.LOGIN_FAILED,
                identifier,
                success=False,
                severity=Severity.MEDIUM,
                auth_path=AuthPath.LOCAL,
                metadata={"reason": "not_found", **remote_context},
            )
            if failure.is_locked:
                return self._locked(identifier, failure)
            if self._unify_errors:
                return self._failure(
                    AuthErrorCode.INVALID_CREDENTIALS,
                    retry_after_ms=failure.delay_ms,
                    auth_path=AuthPath.LOCAL,
                )
            return self._failure(
                AuthErrorCode.USER_NOT_FOUND,
                retry_after_ms=failure.delay_ms,
                auth_path=AuthPath.LOCAL,
            )

        if not self._hasher.verify(password, user.hash_record):
            failure = self._rate_limiter.record_failure(identifier)
            self._audit.log(
                AuditEventType.LOGIN_FAILED,
                identifier,
                success=False,
                severity=Severity.HIGH,
                auth_path=AuthPath.LOCAL,
                metadata={
                    "reason": "invalid_password",
                    "user_id": user.id,
                    "failure_count": failure.failure_count,
                    **remote_context,
                },
            )
            if failure.is_locked:
                return self._locked(identifier, failure)
            return self._failure(
                AuthErrorCode.INVALID_CREDENTIALS,
                retry_after_ms=failure.delay_ms,
                auth_path=AuthPath.LOCAL,
            )

        # --- Match ---
        if self._hasher.is_exposed(user.hash_record):
            self._audit.log(
                AuditEventType.LEGACY_CREDENTIAL_DETECTED,
                user.id,
                success=True,
                severity=Severity.CRITICAL,
                auth_path=AuthPath.LOCAL,
                metadata={"generation": user.hash_record.generation.name},
            )
        if self._hasher.needs_migration(user.hash_record):
            self._migrate(user, password)

        session = self._session.issue(user.id)
        self._rate_limiter.record_success(identifier)
        self._audit.log(
            AuditEventType.LOGIN_SUCCESS,
            user.id,
            success=True,
            auth_path=AuthPath.LOCAL,
            metadata=remote_context,
        )
        self._logger.info(
            "User authenticated from the local store.",
            extra={"event": "LOGIN", "user_id": user.id, "auth_path": "local"},
        )
        return AuthResult(
            success=True,
            auth_path=AuthPath.LOCAL,
            user_id=user.id,
            email=user.email,
            name=user.name,
            session_token=session.token,
        )

    def _migrate(self, user: User, password: str) -> None:
        """Re-hash *user*'s credential at the current generation.

        Best-effort: a failure is audited, never raised.  The update is
        conditional on the stored record being unchanged, so racing
        migrations of the same account apply once.
        """
        old: HashRecord = user.hash_record
        try:
            new = self._hasher.hash(password)
            updated = self._users.update_password_hash(user.id, new, expected=old)
        except (StorageFailure, InvalidInput) as exc:
            self._logger.warning(
                "Credential migration failed for %s: %s", user.id, exc,
                extra={"event": "PASSWORD_MIGRATION_FAILED"},
            )
            self._audit.log(
                AuditEventType.PASSWORD_MIGRATION_FAILED,
                user.id,
                success=False,
                severity=Severity.MEDIUM,
                metadata={"from_generation": old.generation.name},
            )
            return

        if not updated:
            self._logger.info(
                "Credential for %s already rotated; migration skipped.", user.id,
                extra={"event": "PASSWORD_MIGRATION_SKIPPED"},
            )
            return

        self._audit.log(
            AuditEventType.PASSWORD_MIGRATED,
            user.id,
            success=True,
            metadata={
                "from_generation": old.generation.name,
                "to_generation": new.generation.name,
            },
        )

    def _complete_remote(
        self,
        event_type: AuditEventType,
        identifier: str,
        email: str,
        password: str,
        payload: RemoteAuthPayload,
        name: Optional[str] = None,
    ) -> AuthResult:
        """Provision the local mirror of a remotely-accepted account and
        start the session."""

        user: User = self._users.upsert_remote_user(
            email=email,
            name=name or payload.user.username,
            remote_id=payload.user.id,
            hash_record=self._hasher.hash(password),
        )
        session = self._session.issue(user.id, remote_token=payload.token)
        self._rate_limiter.record_success(identifier)
        self._audit.log(
            event_type,
            user.id,
            success=True,
            auth_path=AuthPath.REMOTE,
            metadata={"remote_id": payload.user.id},
        )
        self._logger.info(
            "Remote %s accepted; local account provisioned.", event_type,
            extra={"event": "REMOTE_PROVISIONED", "user_id": user.id, "auth_path": "remote"},
        )
        return AuthResult(
            success=True,
            auth_path=AuthPath.REMOTE,
            user_id=user.id,
            email=user.email,
            name=user.name,
            session_token=session.token,
        )

    # ==================================================================
    # Registration
    # ==================================================================

    def register(self, name: str, email: str, password: str) -> AuthResult:
        """Create an account, remote-first with local fallback.

        Parameters
        ----------
        name:
            Display name.
        email:
            The user's email address.
        password:
            The chosen password.

        Returns
        -------
        AuthResult
        """
        # --- Client-side validation ---
        name_check = self.validate_name(name)
        if not name_check.is_valid:
            return self._failure(AuthErrorCode.VALIDATION_ERROR, name_check.error_message)

        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return self._failure(AuthErrorCode.VALIDATION_ERROR, email_check.error_message)

        pw_check = self.validate_password(password)
        if not pw_check.is_valid:
            return self._failure(AuthErrorCode.WEAK_PASSWORD, pw_check.error_message)

        identifier: str = self.normalize_email(email)
        try:
            return self._register(name.strip(), email.strip(), identifier, password)
        except InvalidInput as exc:
            return self._failure(AuthErrorCode.VALIDATION_ERROR, exc.message)
        except StorageFailure as exc:
            return self._storage_error("register", identifier, exc)

    def _register(
        self, name: str, email: str, identifier: str, password: str,
    ) -> AuthResult:
        outcome: RemoteOutcome = self._remote.register(name, identifier, password)
        payload: Optional[RemoteAuthPayload] = outcome.accepted_payload
        if payload is not None:
            return self._complete_remote(
                AuditEventType.REGISTER_SUCCESS, identifier, email, password, payload,
                name=name,
            )

        if self._users.find_by_normalized_email(identifier) is not None:
            return self._duplicate(identifier, outcome)

        record: HashRecord = self._hasher.hash(password)
        try:
            user: User = self._users.create(name, email, record)
        except DuplicateUser:
            return self._duplicate(identifier, outcome)

        session = self._session.issue(user.id)
        self._rate_limiter.record_success(identifier)
        self._audit.log(
            AuditEventType.REGISTER_SUCCESS,
            user.id,
            success=True,
            auth_path=AuthPath.LOCAL,
            metadata={"remote_status": str(outcome.status)},
        )
        self._logger.info(
            "User registered locally.",
            extra={"event": "REGISTER", "user_id": user.id, "auth_path": "local"},
        )
        return AuthResult(
            success=True,
            auth_path=AuthPath.LOCAL,
            user_id=user.id,
            email=user.email,
            name=user.name,
            session_token=session.token,
        )

    def _duplicate(self, identifier: str, outcome: RemoteOutcome) -> AuthResult:
        """Refuse a duplicate registration; repeated attempts lock the identifier.

        Only this branch consults the rate limiter, so a fresh account can
        always be created even if its email was locked by failed logins.
        """
        decision = self._rate_limiter.check(identifier)
        if decision.locked:
            self._audit.log(
                AuditEventType.RATE_LIMITED,
                identifier,
                success=False,
                severity=Severity.MEDIUM,
                metadata={"remaining_ms": decision.wait_ms, "operation": "register"},
            )
            return self._failure(
                AuthErrorCode.RATE_LIMITED,
                decision.message,
                retry_after_ms=decision.wait_ms,
            )

        failure = self._rate_limiter.record_failure(identifier)
        self._audit.log(
            AuditEventType.REGISTER_FAILED,
            identifier,
            success=False,
            severity=Severity.MEDIUM,
            auth_path=AuthPath.LOCAL,
            metadata={"reason": "duplicate", "remote_status": str(outcome.status)},
        )
        if failure.newly_locked:
            self._audit_lockout(identifier, failure)
        return self._failure(
            AuthErrorCode.DUPLICATE_USER,
            retry_after_ms=failure.delay_ms if not failure.is_locked else 0,
            auth_path=AuthPath.LOCAL,
        )

    # ==================================================================
    # Logout
    # ==================================================================

    def logout(self) -> AuthResult:
        """End the active session.  Idempotent; never fails."""
        ended = self._session.clear()
        subject: str = ended.user_id if ended is not None else _ANONYMOUS_SUBJECT
        self._audit.log(
            AuditEventType.LOGOUT,
            subject,
            success=True,
            metadata={"had_session": ended is not None},
        )
        self._logger.info(
            "User logged out.",
            extra={"event": "LOGOUT", "user_id": subject},
        )
        return AuthResult(success=True, user_id=ended.user_id if ended else None)

    def _on_session_expired(self, ended: Session) -> None:
        self._audit.log(
            AuditEventType.LOGOUT,
            ended.user_id,
            success=True,
            metadata={"reason": "timeout"},
        )
        self._logger.info(
            "Session for %s ended after inactivity.", ended.user_id,
            extra={"event": "SESSION_EXPIRED", "user_id": ended.user_id},
        )

    # ==================================================================
    # Account maintenance
    # ==================================================================

    def change_password(self, current_password: str, new_password: str) -> AuthResult:
        """Rotate the signed-in user's password after re-verifying it.

        The new credential is stored at the current hash generation.
        """
        pw_check = self.validate_password(new_password)
        if not pw_check.is_valid:
            return self._failure(AuthErrorCode.WEAK_PASSWORD, pw_check.error_message)

        try:
            user_or_error = self._reauthenticate(current_password, "change_password")
            if isinstance(user_or_error, AuthResult):
                return user_or_error
            user: User = user_or_error

            new_record: HashRecord = self._hasher.hash(new_password)
            self._users.update_password_hash(user.id, new_record)
        except InvalidInput as exc:
            return self._failure(AuthErrorCode.VALIDATION_ERROR, exc.message)
        except StorageFailure as exc:
            return self._storage_error("change_password", self._session_subject(), exc)

        self._audit.log(
            AuditEventType.PASSWORD_CHANGED,
            user.id,
            success=True,
            severity=Severity.MEDIUM,
            metadata={"to_generation": new_record.generation.name},
        )
        return AuthResult(success=True, user_id=user.id, email=user.email, name=user.name)

    def delete_account(self, password: str) -> AuthResult:
        """Delete the signed-in user's account and every record they own,
        then end the session."""
        try:
            user_or_error = self._reauthenticate(password, "delete_account")
            if isinstance(user_or_error, AuthResult):
                return user_or_error
            user: User = user_or_error

            removed: dict[str, int] = self._users.delete_account(user.id)
            self._rate_limiter.record_success(user.email_normalized)
        except StorageFailure as exc:
            return self._storage_error("delete_account", self._session_subject(), exc)

        self._session.clear()
        self._audit.log(
            AuditEventType.ACCOUNT_DELETED,
            user.id,
            success=True,
            severity=Severity.MEDIUM,
            metadata={f"removed_{table}": count for table, count in removed.items()},
        )
        return AuthResult(success=True, user_id=user.id, email=user.email)

    def _reauthenticate(self, password: str, operation: str) -> Union[User, AuthResult]:
        """Resolve the session user and re-verify *password*.

        Returns the user on success, or the ``AuthResult`` to hand back.
        Wrong passwords count towards the user's rate limit.
        """
        current = self._session.current
        if current is None:
            return self._failure(AuthErrorCode.NOT_AUTHENTICATED)

        user: Optional[User] = self._users.get_by_id(current.user_id)
        if user is None:
            self._session.clear()
            return self._failure(AuthErrorCode.NOT_AUTHENTICATED)

        identifier: str = user.email_normalized
        decision = self._rate_limiter.check(identifier)
        if decision.locked:
            self._audit.log(
                AuditEventType.RATE_LIMITED,
                identifier,
                success=False,
                severity=Severity.MEDIUM,
                metadata={"remaining_ms": decision.wait_ms, "operation": operation},
            )
            return self._failure(
                AuthErrorCode.ACCOUNT_LOCKED,
                decision.message,
                retry_after_ms=decision.wait_ms,
            )

        if not self._hasher.verify(password, user.hash_record):
            failure = self._rate_limiter.record_failure(identifier)
            self._audit.log(
                AuditEventType.LOGIN_FAILED,
                identifier,
                success=False,
                severity=Severity.HIGH,
                auth_path=AuthPath.LOCAL,
                metadata={"reason": "invalid_password", "operation": operation},
            )
            if failure.is_locked:
                return self._locked(identifier, failure)
            return self._failure(
                AuthErrorCode.INVALID_CREDENTIALS, retry_after_ms=failure.delay_ms,
            )
        return user

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _locked(self, identifier: str, failure: FailureOutcome) -> AuthResult:
        if failure.newly_locked:
            self._audit_lockout(identifier, failure)
        return self._failure(
            AuthErrorCode.ACCOUNT_LOCKED,
            failure.message,
            retry_after_ms=failure.delay_ms,
            auth_path=AuthPath.LOCAL,
        )

    def _audit_lockout(self, identifier: str, failure: FailureOutcome) -> None:
        self._audit.log(
            AuditEventType.LOCKOUT_TRIGGERED,
            identifier,
            success=False,
            severity=Severity.HIGH,
            metadata={
                "failure_count": failure.failure_count,
                "lockout_ms": failure.delay_ms,
            },
        )

    def _decoy_record(self) -> HashRecord:
        with self._decoy_lock:
            if self._decoy is None:
                self._decoy = self._hasher.hash(secrets.token_urlsafe(16))
            return self._decoy

    def _session_subject(self) -> str:
        current = self._session.current
        return current.user_id if current is not None else _ANONYMOUS_SUBJECT

    def _storage_error(self, operation: str, subject: str, exc: StorageFailure) -> AuthResult:
        self._logger.error(
            "Storage failure during %s for %s: %s (%s)",
            operation,
            subject,
            exc.message,
            exc.original_error,
            extra={"event": "STORAGE_FAILURE", "operation": operation},
        )
        return self._failure(AuthErrorCode.STORAGE_ERROR)

    @staticmethod
    def _failure(
        code: AuthErrorCode,
        message: Optional[str] = None,
        *,
        retry_after_ms: int = 0,
        auth_path: Optional[AuthPath] = None,
    ) -> AuthResult:
        return AuthResult(
            success=False,
            error_code=code,
            error_message=message or AUTH_ERROR_MESSAGES.get(code, "Request failed."),
            retry_after_ms=retry_after_ms,
            auth_path=auth_path,
        )
