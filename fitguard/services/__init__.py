"""
Authentication Core Services Package.

Services depend on the Repository layer for data access and on the
Auth module for the active session.

The ``create_services()`` factory wires every repository and service together,
returning a typed dict that the application layer (CLI / front end) can
consume without knowing the internal dependency graph.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Optional, TypedDict

import httpx

from fitguard.auth import SessionManager
from fitguard.config import AppConfig
from fitguard.database import DatabaseManager
from fitguard.logger import get_logger
from fitguard.repositories.user_store import UserStore
from fitguard.services.audit_log import AuditLog
from fitguard.services.auth_service import AuthService
from fitguard.services.credential_hasher import CredentialHasher
from fitguard.services.rate_limiter import RateLimiter
from fitguard.services.remote_auth import RemoteAuthClient
from fitguard.services.workouts import WorkoutService
from fitguard.utils.general import utc_now


class ServiceContainer(TypedDict):
    """Typed container for all core services."""

    # --- Data access ---
    user_store: UserStore

    # --- Leaf services ---
    credential_hasher: CredentialHasher
    audit_log: AuditLog
    rate_limiter: RateLimiter
    remote_auth: RemoteAuthClient

    # --- Orchestration ---
    auth_service: AuthService
    workout_service: WorkoutService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    clock: Callable[[], datetime] = utc_now,
    remote_transport: Optional[httpx.BaseTransport] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup and passes the
    returned dict to commands as needed.

    Args:
        db: Initialised DatabaseManager with the schema in place.
        config: Application configuration (injected into services that need it).
        session: Session holder shared by the auth and workout services.
        clock: Current-time source for the rate limiter and the audit log.
        remote_transport: Optional httpx transport for the remote client.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("fitguard.services", config)

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    user_store = UserStore(db=db, logger=logger)

    # ------------------------------------------------------------------
    # 2. Leaf services (no service dependencies)
    # ------------------------------------------------------------------
    credential_hasher = CredentialHasher(config=config)
    audit_log = AuditLog(db=db, logger=get_logger("fitguard.audit", config), config=config, clock=clock)
    rate_limiter = RateLimiter(db=db, logger=logger, config=config, clock=clock)
    remote_auth = RemoteAuthClient(
        base_url=config.REMOTE_AUTH_URL,
        timeout=config.REMOTE_TIMEOUT_S,
        enabled=config.REMOTE_AUTH_ENABLED,
        logger=logger,
        transport=remote_transport,
    )

    # ------------------------------------------------------------------
    # 3. Orchestration services (depend on other services)
    # ------------------------------------------------------------------
    auth_service = AuthService(
        config=config,
        user_store=user_store,
        hasher=credential_hasher,
        rate_limiter=rate_limiter,
        audit_log=audit_log,
        remote=remote_auth,
        session=session,
        logger=logger,
    )
    workout_service = WorkoutService(
        user_store=user_store,
        session=session,
        logger=logger,
    )

    return ServiceContainer(
        user_store=user_store,
        credential_hasher=credential_hasher,
        audit_log=audit_log,
        rate_limiter=rate_limiter,
        remote_auth=remote_auth,
        auth_service=auth_service,
        workout_service=workout_service,
    )
