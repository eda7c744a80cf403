"""
Authentication & Session State.

Provides an injectable ``SessionManager`` that holds the single active
``Session`` on this device.  The token is produced here and persisted
only through the :class:`~fitguard.services.token_store.SecureTokenStore`
capability, together with the issue time and the time of the last
guarded action.

A session left idle for longer than ``idle_timeout`` is ended on the
next access.  Components that must react to that (the audit trail)
subscribe with :meth:`SessionManager.add_expiry_listener`.

Usage::

    from fitguard.auth import SessionManager

    session = SessionManager(token_store, idle_timeout=timedelta(minutes=5))
    issued = session.issue(user.id)
    owner_id = session.touch().user_id
"""

from __future__ import annotations

import hmac
import secrets
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from fitguard.errors import AuthenticationError
from fitguard.models.auth_models import Session
from fitguard.utils.general import from_db_timestamp, to_db_timestamp, utc_now

if TYPE_CHECKING:
    from fitguard.services.token_store import SecureTokenStore

SESSION_TOKEN_KEY: str = "session_token"
SESSION_USER_KEY: str = "session_user"
SESSION_ISSUED_KEY: str = "session_issued_at"
SESSION_ACTIVITY_KEY: str = "session_last_activity"
REMOTE_TOKEN_KEY: str = "remote_token"

_PERSISTED_KEYS: tuple[str, ...] = (
    SESSION_TOKEN_KEY,
    SESSION_USER_KEY,
    SESSION_ISSUED_KEY,
    SESSION_ACTIVITY_KEY,
    REMOTE_TOKEN_KEY,
)

ExpiryListener = Callable[[Session], None]


class SessionManager:
    """Injectable holder for the current session.

    Each instance maintains its own session state, eliminating the
    need for module-level globals.  Pass a single ``SessionManager``
    through your dependency-injection layer so every component shares
    the same session.

    Parameters
    ----------
    token_store:
        Protected key/value storage the session is persisted in.
    clock:
        Returns the current UTC time; injectable for tests.
    idle_timeout:
        Inactivity after which the session ends.  ``None`` keeps
        sessions alive until logout.
    """

    def __init__(
        self,
        token_store: "SecureTokenStore",
        clock: Callable[[], datetime] = utc_now,
        idle_timeout: Optional[timedelta] = None,
    ) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._store: "SecureTokenStore" = token_store
        self._clock: Callable[[], datetime] = clock
        self._idle_timeout: Optional[timedelta] = idle_timeout
        self._current: Optional[Session] = None
        self._listeners: list[ExpiryListener] = []

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        """Call *listener* with the ended session whenever one times out."""
        with self._lock:
            self._listeners.append(listener)

    def issue(self, user_id: str, remote_token: Optional[str] = None) -> Session:
        """Start a new session for *user_id*, replacing any existing one.

        *remote_token* is the bearer token returned by the remote API,
        kept alongside the session when the remote path accepted.

        A failure to persist the token is tolerated: the session stays
        valid in memory and simply is not restored after a restart.
        """
        now: datetime = self._clock()
        session = Session(
            user_id=user_id,
            token=secrets.token_urlsafe(32),
            issued_at=now,
            last_activity=now,
        )
        with self._lock:
            self._current = session
            self._store.set(SESSION_USER_KEY, user_id)
            self._store.set(SESSION_TOKEN_KEY, session.token)
            self._store.set(SESSION_ISSUED_KEY, to_db_timestamp(now))
            self._store.set(SESSION_ACTIVITY_KEY, to_db_timestamp(now))
            if remote_token:
                self._store.set(REMOTE_TOKEN_KEY, remote_token)
            else:
                self._store.delete(REMOTE_TOKEN_KEY)
        return session

    def touch(self) -> Session:
        """Record activity on the active session and return it.

        Raises:
            AuthenticationError: If no session is active or it has
                been idle past the timeout.
        """
        with self._lock:
            session, expired = self._live()
            if session is not None:
                now: datetime = self._clock()
                session = session.model_copy(update={"last_activity": now})
                self._current = session
                self._store.set(SESSION_ACTIVITY_KEY, to_db_timestamp(now))
        self._notify(expired)
        if session is None:
            raise AuthenticationError(
                "No user is currently authenticated. Login required."
            )
        return session

    def remote_token(self) -> Optional[str]:
        """Bearer token from the remote API for the active session, if any."""
        if self.current is None:
            return None
        return self._store.get(REMOTE_TOKEN_KEY)

    @property
    def current(self) -> Optional[Session]:
        with self._lock:
            session, expired = self._live()
        self._notify(expired)
        return session

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a session is active and not idle past the timeout."""
        return self.current is not None

    def require_owner_id(self) -> str:
        """Return the authenticated user id without recording activity.

        Raises:
            AuthenticationError: If no session is active.
        """
        session = self.current
        if session is None:
            raise AuthenticationError(
                "No user is currently authenticated. Login required."
            )
        return session.user_id

    def validate(self, token: Optional[str]) -> bool:
        """Constant-time check of *token* against the active session."""
        session = self.current
        if session is None or not token:
            return False
        return hmac.compare_digest(
            session.token.encode("utf-8"), token.encode("utf-8"),
        )

    def restore(self) -> Optional[Session]:
        """Reload the persisted session after a restart.

        Returns ``None`` (and keeps the manager signed out) when nothing
        usable is stored or the stored session has been idle past the
        timeout.
        """
        token = self._store.get(SESSION_TOKEN_KEY)
        user_id = self._store.get(SESSION_USER_KEY)
        if not token or not user_id:
            return None
        issued_at: datetime = (
            from_db_timestamp(self._store.get(SESSION_ISSUED_KEY)) or self._clock()
        )
        last_activity: datetime = (
            from_db_timestamp(self._store.get(SESSION_ACTIVITY_KEY)) or issued_at
        )
        with self._lock:
            self._current = Session(
                user_id=user_id,
                token=token,
                issued_at=issued_at,
                last_activity=last_activity,
            )
        return self.current

    def clear(self) -> Optional[Session]:
        """End the session and delete the persisted token.

        Safe to call when no session exists.  Returns the session that
        was ended, if any.
        """
        with self._lock:
            ended = self._current
            self._drop()
            return ended

    # ------------------------------------------------------------------
    # Private helpers (callers hold ``_lock``)
    # ------------------------------------------------------------------

    def _live(self) -> tuple[Optional[Session], Optional[Session]]:
        """Return ``(active, expired)``, ending the session when idle."""
        session = self._current
        if session is None or self._idle_timeout is None:
            return session, None
        if self._clock() - session.last_activity < self._idle_timeout:
            return session, None
        self._drop()
        return None, session

    def _drop(self) -> None:
        self._current = None
        for key in _PERSISTED_KEYS:
            self._store.delete(key)

    def _notify(self, expired: Optional[Session]) -> None:
        if expired is None:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(expired)
