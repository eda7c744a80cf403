"""Shared utility functions for the FitGuard authentication core.

This package provides convenience re-exports so that consumers can import
directly from ``fitguard.utils`` (e.g. ``from fitguard.utils import
normalize_identifier``) while full absolute imports (e.g. ``from
fitguard.utils.general import normalize_identifier``) remain supported.
"""

from fitguard.utils.general import (
    REDACTED,
    format_duration,
    from_db_timestamp,
    machine_identity,
    normalize_identifier,
    redact_metadata,
    to_db_timestamp,
    utc_now,
)

__all__ = [
    "REDACTED",
    "format_duration",
    "from_db_timestamp",
    "machine_identity",
    "normalize_identifier",
    "redact_metadata",
    "to_db_timestamp",
    "utc_now",
]
