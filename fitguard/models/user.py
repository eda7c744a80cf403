"""
User Model.

Pydantic models for local accounts and their stored credential.  The
credential is a tagged record: the generation says how ``value`` must
be interpreted, so the hashing scheme is never guessed from the shape
of the stored string.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from fitguard.models.enums import HashGeneration

_HEX_DIGEST_RE: re.Pattern[str] = re.compile(r"^[0-9a-fA-F]{64}$")


class HashRecord(BaseModel):
    """A stored credential tagged with the scheme that produced it.

    ``value`` layout per generation:

    - ``LEGACY_PLAINTEXT``: the password itself.
    - ``LEGACY_SHA256``: hex SHA-256 of password + application salt.
    - ``PBKDF2_SHA256``: ``<hex salt>$<hex hash>``.
    - ``ARGON2ID``: the argon2 encoded string (``$argon2id$v=19$...``).
    """

    generation: HashGeneration
    value: str

    model_config = {"frozen": True}

    def __repr__(self) -> str:
        # Never render the stored secret.
        return f"HashRecord(generation={self.generation.name})"

    __str__ = __repr__

    @property
    def is_plaintext(self) -> bool:
        return self.generation == HashGeneration.LEGACY_PLAINTEXT

    @classmethod
    def from_legacy(cls, stored: str) -> "HashRecord":
        """Tag a value from the historical untagged ``password`` column.

        Old builds compared values shorter than 60 characters directly
        and treated everything else as the salted SHA-256 digest.  The
        digest is 64 hex characters, so that shape is the only one that
        can be a hash; argon2 strings written by a partially-migrated
        install are recognised by their prefix.  Anything else is a
        plaintext password.
        """
        if stored.startswith("$argon2id$"):
            return cls(generation=HashGeneration.ARGON2ID, value=stored)
        if _HEX_DIGEST_RE.match(stored):
            return cls(generation=HashGeneration.LEGACY_SHA256, value=stored.lower())
        return cls(generation=HashGeneration.LEGACY_PLAINTEXT, value=stored)


class User(BaseModel):
    """Represents a local account.

    ``email`` keeps the casing the user registered with for display;
    ``email_normalized`` is the lookup and rate-limit key.
    """

    id: str
    name: str
    email: str
    email_normalized: str
    hash_record: HashRecord
    remote_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
