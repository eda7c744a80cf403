"""
Security Audit Models.

Schema-validated representation of audit trail entries and of the
filters operational tooling uses to read them back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

from fitguard.models.enums import AuditEventType, AuthPath, Severity

# Scalar type permitted inside the ``metadata`` mapping.  Kept
# deliberately flat: nested structures should be modelled explicitly,
# not smuggled through the audit log.
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """A single immutable audit trail entry.

    ``subject`` is a user id or a normalised email, never a secret.
    ``id`` is assigned by the store on insert.
    """

    id: Optional[int] = None
    event_type: AuditEventType
    subject: str
    success: bool
    severity: Severity = Severity.LOW
    timestamp: datetime
    auth_path: Optional[AuthPath] = None
    metadata: dict[str, DetailValue] = Field(default_factory=dict)

    model_config = {"frozen": True}


class AuditFilter(BaseModel):
    """Query parameters for ``AuditLog.query``.  Unset fields match all."""

    event_types: Optional[list[AuditEventType]] = None
    subject: Optional[str] = None
    success: Optional[bool] = None
    min_severity: Optional[Severity] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=10_000)


class IntegrityReport(BaseModel):
    """Result of ``AuditLog.verify_integrity``."""

    checked: int = 0
    tampered_ids: list[int] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.tampered_ids
