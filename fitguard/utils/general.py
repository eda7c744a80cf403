"""General Utility Functions."""

from __future__ import annotations

import getpass
import os
import socket
from datetime import datetime, timezone
from typing import Optional, Union

__all__ = [
    "format_duration",
    "from_db_timestamp",
    "is_sensitive_key",
    "machine_identity",
    "normalize_identifier",
    "redact_metadata",
    "to_db_timestamp",
    "utc_now",
]


# ---------------------------------------------------------------------------
# Type definitions
# ---------------------------------------------------------------------------

MetadataValue = Union[str, int, float, bool, None]
"""Scalar types permitted in audit / log metadata."""

# Substrings that mark a metadata key as carrying secret material.
_SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "passwd",
    "token",
    "secret",
    "api_key",
    "apikey",
    "credit_card",
    "ssn",
    "hash",
)

REDACTED: str = "[REDACTED]"

# Fixed-width UTC layout so that lexicographic order in SQLite equals
# chronological order.
_DB_TIMESTAMP_FORMAT: str = "%Y-%m-%dT%H:%M:%S.%fZ"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Return the current time as an aware UTC ``datetime``."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Render *value* as the fixed-format UTC string stored in SQLite.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(_DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC ``datetime``.

    Accepts the fixed storage format as well as any ISO-8601 string
    (rows imported from older databases).
    """
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, _DB_TIMESTAMP_FORMAT)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Identifier and message helpers
# ---------------------------------------------------------------------------


def normalize_identifier(raw: str) -> str:
    """Normalise a login identifier (email) for lookup and rate limiting.

    Trims surrounding whitespace and case-folds, so ``" Bob@X.com "``
    and ``"bob@x.com"`` map to the same account and the same counter.
    """
    return raw.strip().casefold()


def format_duration(milliseconds: int) -> str:
    """Render a wait time as ``"X minute(s) Y second(s)"``.

    Rounds up to the next whole second so a positive wait never reads
    as "0 seconds".

    >>> format_duration(61_500)
    '1 minute 2 seconds'
    """
    total_seconds = max(0, -(-milliseconds // 1000))
    minutes, seconds = divmod(total_seconds, 60)

    parts: list[str] = []
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    if seconds or not minutes:
        parts.append(f"{seconds} second{'s' if seconds != 1 else ''}")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Security helpers
# ---------------------------------------------------------------------------


def machine_identity() -> str:
    """Return ``hostname:username``, the machine-binding key material.

    Used to derive the token-store encryption key and, when no explicit
    key is configured, the audit signature key.
    """
    try:
        username: str = getpass.getuser()
    except (KeyError, OSError):
        # No login name in minimal containers.
        username = str(os.getuid()) if hasattr(os, "getuid") else "unknown"
    return f"{socket.gethostname()}:{username}"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_KEY_MARKERS)


def redact_metadata(
    metadata: Optional[dict[str, MetadataValue]],
) -> dict[str, MetadataValue]:
    """Return a copy of *metadata* with secret-bearing values replaced.

    Any key containing one of the sensitive markers (``password``,
    ``token``, ``secret``, ``api_key`` ...) has its value replaced with
    :data:`REDACTED`, whatever the value was.

    Parameters
    ----------
    metadata:
        Caller-supplied context.  ``None`` yields an empty mapping.

    Returns
    -------
    dict[str, MetadataValue]
        A new mapping; the input is never modified.
    """
    if not metadata:
        return {}
    return {
        key: (REDACTED if is_sensitive_key(key) else value)
        for key, value in metadata.items()
    }
