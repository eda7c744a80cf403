"""
Security Audit Log.

Append-only store of security-relevant events in the ``security_audit``
SQLite table, doubling as the bridge to the operational log sink: each
recorded event is also emitted as an ``AUDIT:`` JSON log line.

Guarantees
----------
- ``record`` / ``log`` never raise.  A failed write is logged at
  ``warning`` level and counted in :pyattr:`AuditLog.failed_writes`; the
  authentication decision that triggered it proceeds unaffected.
- Metadata keys that look like secrets (``password``, ``token`` ...) are
  redacted before anything is written or logged.
- Each row carries an HMAC-SHA256 signature over its stored fields so
  that :meth:`AuditLog.verify_integrity` can detect file-level edits.
- Retention: events older than ``AUDIT_RETENTION_DAYS`` are deleted by
  :meth:`AuditLog.sweep`, which runs explicitly, before every
  :meth:`AuditLog.query`, and every ``AUDIT_SWEEP_EVERY`` writes.  The
  cutoff is strict, so an event younger than the horizon is never
  removed, whatever the interleaving with concurrent writes.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from fitguard.config import AppConfig
from fitguard.database import DatabaseManager
from fitguard.errors import AuditWriteFailure
from fitguard.logger import StructuredLogger
from fitguard.models.audit import AuditEvent, AuditFilter, DetailValue, IntegrityReport
from fitguard.models.enums import SEVERITY_RANK, AuditEventType, AuthPath, Severity
from fitguard.utils.general import (
    from_db_timestamp,
    machine_identity,
    redact_metadata,
    to_db_timestamp,
    utc_now,
)

_DEFAULT_FAILURE_WINDOW: timedelta = timedelta(minutes=15)


class AuditLog:
    """Persistent, tamper-evident security audit trail.

    Parameters
    ----------
    db:
        Initialised database manager; the ``security_audit`` table is
        created by ``schema.initialize_schema``.
    logger:
        Structured logger acting as the operational sink.
    config:
        Supplies retention, sweep cadence and the signature key.
    clock:
        Returns the current UTC time.  Injected so that retention can be
        tested deterministically.
    """

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        config: AppConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._clock: Callable[[], datetime] = clock
        self._retention: timedelta = timedelta(days=config.AUDIT_RETENTION_DAYS)
        self._sweep_every: int = config.AUDIT_SWEEP_EVERY

        configured_key: str = config.AUDIT_HMAC_KEY.get_secret_value()
        self._key: bytes = (configured_key or machine_identity()).encode("utf-8")

        self._counter_lock: threading.Lock = threading.Lock()
        self._writes_since_sweep: int = 0
        self._failed_writes: int = 0

    @property
    def failed_writes(self) -> int:
        """Number of events that could not be persisted since start-up."""
        with self._counter_lock:
            return self._failed_writes

    @property
    def retention(self) -> timedelta:
        return self._retention

    # ==================================================================
    # Writing
    # ==================================================================

    def log(
        self,
        event_type: AuditEventType,
        subject: str,
        success: bool,
        severity: Severity = Severity.LOW,
        auth_path: Optional[AuthPath] = None,
        metadata: Optional[dict[str, DetailValue]] = None,
    ) -> None:
        """Build an event stamped with the current time and record it.

        Parameters
        ----------
        event_type:
            Event category.
        subject:
            User id or normalised email.  Never a password.
        success:
            Whether the audited operation succeeded.
        severity:
            Operator-facing severity.
        auth_path:
            Which authentication path produced the verdict, if any.
        metadata:
            Flat contextual fields; secret-looking keys are redacted.
        """
        try:
            event = AuditEvent(
                event_type=event_type,
                subject=subject,
                success=success,
                severity=severity,
                timestamp=self._clock(),
                auth_path=auth_path,
                metadata=metadata or {},
            )
        except ValidationError as exc:
            self._count_failure(str(event_type), exc)
            return
        self.record(event)

    def record(self, event: AuditEvent) -> None:
        """Persist *event* and emit it to the operational sink.

        Always returns normally; persistence failures are logged and
        counted, never raised.
        """
        safe_event = event.model_copy(
            update={"id": None, "metadata": redact_metadata(event.metadata)}
        )
        self._emit(safe_event)

        try:
            self._insert(safe_event)
        except AuditWriteFailure as exc:
            self._count_failure(str(safe_event.event_type), exc)
            return

        self._maybe_sweep()

    # ==================================================================
    # Reading (operational tooling only)
    # ==================================================================

    def query(self, audit_filter: Optional[AuditFilter] = None) -> list[AuditEvent]:
        """Return events matching *audit_filter*, newest first.

        A retention sweep runs first, so expired events are never
        returned.
        """
        flt: AuditFilter = audit_filter or AuditFilter()
        self.sweep()

        clauses: list[str] = []
        params: list[object] = []

        if flt.event_types:
            placeholders = ", ".join("?" for _ in flt.event_types)
            clauses.append(f"event_type IN ({placeholders})")
            params.extend(str(t) for t in flt.event_types)
        if flt.subject is not None:
            clauses.append("subject = ?")
            params.append(flt.subject)
        if flt.success is not None:
            clauses.append("success = ?")
            params.append(1 if flt.success else 0)
        if flt.min_severity is not None:
            allowed = [
                str(sev) for sev, rank in SEVERITY_RANK.items()
                if rank >= SEVERITY_RANK[flt.min_severity]
            ]
            clauses.append(f"severity IN ({', '.join('?' for _ in allowed)})")
            params.extend(allowed)
        if flt.since is not None:
            clauses.append("timestamp >= ?")
            params.append(to_db_timestamp(flt.since))
        if flt.until is not None:
            clauses.append("timestamp <= ?")
            params.append(to_db_timestamp(flt.until))

        where: str = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = (
            "SELECT id, event_type, subject, success, severity, timestamp, "
            f"auth_path, metadata FROM security_audit {where} "
            "ORDER BY timestamp DESC, id DESC LIMIT ?"
        )
        params.append(flt.limit)

        with self._db.write_lock:
            rows = self._db.sqlite.execute(sql, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def count_recent_failures(
        self,
        subject: str,
        window: timedelta = _DEFAULT_FAILURE_WINDOW,
        event_types: Iterable[AuditEventType] = (AuditEventType.LOGIN_FAILED,),
    ) -> int:
        """Count failed events for *subject* within the last *window*.

        Brute-force indicator for operators; independent of the rate
        limiter, whose counter a success resets.
        """
        types = [str(t) for t in event_types]
        since = to_db_timestamp(self._clock() - window)
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                f"SELECT COUNT(*) AS cnt FROM security_audit "
                f"WHERE subject = ? AND success = 0 AND timestamp >= ? "
                f"AND event_type IN ({', '.join('?' for _ in types)})",
                (subject, since, *types),
            ).fetchone()
        return int(row["cnt"]) if row else 0

    # ==================================================================
    # Retention
    # ==================================================================

    def sweep(self) -> int:
        """Delete events older than the retention horizon.

        Idempotent.  Returns the number of rows removed; ``0`` when the
        sweep itself fails (the failure is logged).
        """
        cutoff: str = to_db_timestamp(self._clock() - self._retention)
        try:
            with self._db.write_lock:
                cursor = self._db.sqlite.execute(
                    "DELETE FROM security_audit WHERE timestamp < ?", (cutoff,),
                )
                if not self._db.in_batch:
                    self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.warning(
                "Audit retention sweep failed: %s", exc,
                extra={"event": "AUDIT_SWEEP_FAILED"},
            )
            return 0

        deleted: int = max(cursor.rowcount, 0)
        if deleted:
            self._logger.info(
                "Audit retention sweep removed %d event(s) older than %s.",
                deleted, cutoff,
                extra={"event": "AUDIT_SWEEP"},
            )
        return deleted

    # ==================================================================
    # Integrity
    # ==================================================================

    def verify_integrity(self) -> IntegrityReport:
        """Recompute every row signature and report mismatches."""
        with self._db.write_lock:
            rows = self._db.sqlite.execute(
                "SELECT id, event_type, subject, success, severity, timestamp, "
                "auth_path, metadata, signature FROM security_audit ORDER BY id"
            ).fetchall()

        tampered: list[int] = []
        for row in rows:
            expected = self._sign(
                row["event_type"],
                row["subject"],
                int(row["success"]),
                row["severity"],
                row["timestamp"],
                row["auth_path"],
                row["metadata"],
            )
            if not hmac.compare_digest(expected, row["signature"] or ""):
                tampered.append(int(row["id"]))

        if tampered:
            self._logger.critical(
                "Audit integrity check failed for %d row(s).", len(tampered),
                extra={"event": "AUDIT_TAMPER_DETECTED", "ids": tampered[:20]},
            )
        return IntegrityReport(checked=len(rows), tampered_ids=tampered)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _insert(self, event: AuditEvent) -> None:
        metadata_json: str = json.dumps(event.metadata, sort_keys=True, default=str)
        timestamp: str = to_db_timestamp(event.timestamp)
        auth_path: Optional[str] = str(event.auth_path) if event.auth_path else None
        success: int = 1 if event.success else 0
        signature: str = self._sign(
            str(event.event_type),
            event.subject,
            success,
            str(event.severity),
            timestamp,
            auth_path,
            metadata_json,
        )
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO security_audit
                        (event_type, subject, success, severity, timestamp,
                         auth_path, metadata, signature)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(event.event_type),
                        event.subject,
                        success,
                        str(event.severity),
                        timestamp,
                        auth_path,
                        metadata_json,
                        signature,
                    ),
                )
                if not self._db.in_batch:
                    self._db.sqlite.commit()
        except sqlite3.Error as exc:
            raise AuditWriteFailure(f"Could not persist audit event: {exc}") from exc

    def _sign(
        self,
        event_type: str,
        subject: str,
        success: int,
        severity: str,
        timestamp: str,
        auth_path: Optional[str],
        metadata_json: str,
    ) -> str:
        payload: str = json.dumps(
            [event_type, subject, success, severity, timestamp, auth_path, metadata_json],
            separators=(",", ":"),
        )
        return hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def _emit(self, event: AuditEvent) -> None:
        line: str = json.dumps(event.model_dump(mode="json", exclude={"id"}))
        if event.severity == Severity.CRITICAL:
            self._logger.critical("AUDIT: %s", line)
        else:
            self._logger.info("AUDIT: %s", line)

    def _count_failure(self, event_type: str, exc: Exception) -> None:
        with self._counter_lock:
            self._failed_writes += 1
        self._logger.warning(
            "Failed to persist audit event %s: %s", event_type, exc,
            extra={"event": "AUDIT_WRITE_FAILED"},
        )

    def _maybe_sweep(self) -> None:
        with self._counter_lock:
            self._writes_since_sweep += 1
            due: bool = self._writes_since_sweep >= self._sweep_every
            if due:
                self._writes_since_sweep = 0
        if due:
            self.sweep()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AuditEvent:
        timestamp = from_db_timestamp(row["timestamp"])
        return AuditEvent(
            id=int(row["id"]),
            event_type=AuditEventType(row["event_type"]),
            subject=row["subject"],
            success=bool(row["success"]),
            severity=Severity(row["severity"]),
            timestamp=timestamp,
            auth_path=AuthPath(row["auth_path"]) if row["auth_path"] else None,
            metadata=json.loads(row["metadata"] or "{}"),
        )
