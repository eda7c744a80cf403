"""
FitGuard Operational Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite schema, and runs one maintenance command.  Every
subsystem is wired here, with no module-level globals.

Usage::

    python main.py init
    python main.py sweep
    python main.py audit --event login_failed --subject bob@x.com --limit 20
    python main.py verify-audit
    python main.py unlock bob@x.com
"""

from __future__ import annotations

import argparse
import atexit
import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fitguard.auth import SessionManager
from fitguard.config import AppConfig, get_config
from fitguard.database import DatabaseManager
from fitguard.logger import StructuredLogger, get_logger
from fitguard.models.audit import AuditFilter
from fitguard.models.enums import AuditEventType, Severity
from fitguard.schema import initialize_schema
from fitguard.services import ServiceContainer, create_services
from fitguard.services.token_store import EncryptedTokenStore
from fitguard.utils.general import normalize_identifier, utc_now


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fitguard",
        description="Maintenance commands for the FitGuard authentication core.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create or upgrade the local database schema")
    commands.add_parser(
        "sweep",
        help="Apply audit retention and drop stale rate-limit entries",
    )

    audit = commands.add_parser("audit", help="Print audit events as JSON lines, newest first")
    audit.add_argument(
        "--event",
        action="append",
        choices=[e.value for e in AuditEventType],
        help="Only this event type (repeatable)",
    )
    audit.add_argument("--subject", help="User id or email")
    audit.add_argument(
        "--min-severity",
        choices=[s.value for s in Severity],
        help="Only events at or above this severity",
    )
    audit.add_argument("--failures-only", action="store_true", help="Only unsuccessful events")
    audit.add_argument("--days", type=int, help="Only events from the last N days")
    audit.add_argument("--limit", type=int, default=100, help="Maximum events (default: 100)")

    commands.add_parser("verify-audit", help="Check every audit row's signature")

    unlock = commands.add_parser("unlock", help="Clear failures and lockout for an email")
    unlock.add_argument("email")

    return parser


def _run_command(
    args: argparse.Namespace,
    services: ServiceContainer,
    logger: StructuredLogger,
) -> int:
    if args.command == "init":
        print("Schema is up to date.")
        return 0

    if args.command == "sweep":
        removed_events = services["audit_log"].sweep()
        removed_limits = services["rate_limiter"].sweep_stale()
        print(f"Removed {removed_events} expired audit event(s).")
        print(f"Removed {removed_limits} stale rate-limit entr{'y' if removed_limits == 1 else 'ies'}.")
        return 0

    if args.command == "audit":
        if args.days is not None and args.days < 1:
            raise SystemExit("--days must be >= 1")
        subject: Optional[str] = args.subject
        if subject and "@" in subject:
            # Email subjects are recorded normalised; user ids verbatim.
            subject = normalize_identifier(subject)
        audit_filter = AuditFilter(
            event_types=[AuditEventType(e) for e in args.event] if args.event else None,
            subject=subject,
            success=False if args.failures_only else None,
            min_severity=Severity(args.min_severity) if args.min_severity else None,
            since=utc_now() - timedelta(days=args.days) if args.days else None,
            limit=args.limit,
        )
        for event in services["audit_log"].query(audit_filter):
            print(event.model_dump_json())
        return 0

    if args.command == "verify-audit":
        report = services["audit_log"].verify_integrity()
        print(json.dumps({
            "checked": report.checked,
            "tampered_ids": report.tampered_ids,
            "ok": report.ok,
        }))
        return 0 if report.ok else 2

    if args.command == "unlock":
        identifier: str = normalize_identifier(args.email)
        services["rate_limiter"].record_success(identifier)
        logger.warning(
            "Rate-limit state cleared by operator for %s.", identifier,
            extra={"event": "OPERATOR_UNLOCK"},
        )
        print(f"Cleared rate-limit state for {identifier}.")
        return 0

    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point: wire dependencies and run one command."""
    args = _build_parser().parse_args(argv)

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config: AppConfig = get_config()
    logger: StructuredLogger = get_logger("fitguard.cli", config)

    # ------------------------------------------------------------------
    # 2. Database Manager (SQLite, always local)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        sqlite_path=Path(config.DATABASE_PATH),
        logger=get_logger("fitguard.database", config),
    )

    # DatabaseManager.close() is safe to call multiple times.
    atexit.register(db.close)

    try:
        # --------------------------------------------------------------
        # 3. SQLite Schema Initialization (idempotent, versioned)
        # --------------------------------------------------------------
        initialize_schema(db.sqlite, get_logger("fitguard.schema", config))

        # --------------------------------------------------------------
        # 4. Secure token store + session
        # --------------------------------------------------------------
        token_store = EncryptedTokenStore(
            db=db,
            logger=get_logger("fitguard.token_store", config),
            salt_path=config.TOKEN_STORE_SALT_PATH,
        )
        idle_s: int = config.SESSION_IDLE_TIMEOUT_S
        session = SessionManager(
            token_store,
            idle_timeout=timedelta(seconds=idle_s) if idle_s > 0 else None,
        )

        # --------------------------------------------------------------
        # 5. Service Container (single composition root)
        # --------------------------------------------------------------
        services = create_services(db=db, config=config, session=session)
        try:
            return _run_command(args, services, logger)
        finally:
            services["remote_auth"].close()
    finally:
        db.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
