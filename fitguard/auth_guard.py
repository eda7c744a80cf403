"""
Owner-scoping guard.

``require_auth(session)`` builds a decorator for service methods that
act on the signed-in user's records.  Each call records activity on the
session (which also enforces the idle timeout) and hands the session's
user id to the wrapped function as its first argument, so the owner is
never supplied by the caller::

    guard = require_auth(session)

    @guard
    def list_workouts(owner_id: str, limit: int | None = None) -> ...:
        ...

    list_workouts(limit=10)   # owner_id comes from the session
"""

from __future__ import annotations

from functools import wraps
from typing import Callable, Concatenate, ParamSpec, TypeVar

from fitguard.auth import SessionManager

P = ParamSpec("P")
R = TypeVar("R")


def require_auth(
    session: SessionManager,
) -> Callable[[Callable[Concatenate[str, P], R]], Callable[P, R]]:
    """Return a decorator injecting the active session's user id.

    Raises :class:`~fitguard.errors.AuthenticationError` from the
    wrapped call when nobody is signed in or the session has expired.
    """

    def decorator(func: Callable[Concatenate[str, P], R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            owner_id: str = session.touch().user_id
            return func(owner_id, *args, **kwargs)

        return wrapper

    return decorator
