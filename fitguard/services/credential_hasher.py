"""
Credential Hasher.

Hashes passwords at the current generation, verifies a password against
a stored ``HashRecord`` of *any* generation, and reports whether a
record must be migrated.

Generations
-----------
- ``LEGACY_PLAINTEXT``: early builds stored the password itself.
  Verification degrades to a constant-time equality check and every
  such record counts as an exposed secret.
- ``LEGACY_SHA256``: hex SHA-256 of ``password + LEGACY_DIGEST_SALT``
  (one application-wide salt, fast digest).
- ``PBKDF2_SHA256``: PBKDF2-HMAC-SHA256, 600 000 iterations, 32-byte
  random salt, stored as ``<hex salt>$<hex hash>``.
- ``ARGON2ID``: argon2id encoded string (current).

All methods are pure apart from the system random-salt source.
"""

from __future__ import annotations

import hashlib
import hmac
import os

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fitguard.config import AppConfig
from fitguard.errors import InvalidInput
from fitguard.models.enums import HashGeneration
from fitguard.models.user import HashRecord


class CredentialHasher:
    """Password hashing capability with generation-aware verification.

    Parameters
    ----------
    config:
        Application configuration; supplies the argon2 cost parameters
        and the historical SHA-256 salt.
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _PBKDF2_SALT_BYTES: int = 32

    def __init__(self, config: AppConfig) -> None:
        self._legacy_salt: str = config.LEGACY_DIGEST_SALT.get_secret_value()
        self._argon2: PasswordHasher = PasswordHasher(
            time_cost=config.ARGON2_TIME_COST,
            memory_cost=config.ARGON2_MEMORY_COST,
            parallelism=config.ARGON2_PARALLELISM,
            type=Type.ID,
        )

    # ==================================================================
    # Hashing
    # ==================================================================

    def hash(self, plaintext: str) -> HashRecord:
        """Hash *plaintext* at the current generation.

        Raises
        ------
        InvalidInput
            If *plaintext* is empty, not a ``str``, or cannot be encoded
            as UTF-8 (lone surrogates).
        """
        self._require_text(plaintext)
        return HashRecord(
            generation=HashGeneration.current(),
            value=self._argon2.hash(plaintext),
        )

    def hash_pbkdf2(self, plaintext: str) -> HashRecord:
        """Hash *plaintext* as a ``PBKDF2_SHA256`` record.

        Not used for new credentials; kept so that stores written by the
        previous offline cache can be reproduced and verified.
        """
        self._require_text(plaintext)
        salt: bytes = os.urandom(self._PBKDF2_SALT_BYTES)
        digest: str = hashlib.pbkdf2_hmac(
            "sha256",
            plaintext.encode("utf-8"),
            salt,
            iterations=self._PBKDF2_ITERATIONS,
        ).hex()
        return HashRecord(
            generation=HashGeneration.PBKDF2_SHA256,
            value=f"{salt.hex()}${digest}",
        )

    def legacy_digest(self, plaintext: str) -> str:
        """Return the ``LEGACY_SHA256`` digest of *plaintext*."""
        return hashlib.sha256(
            (plaintext + self._legacy_salt).encode("utf-8")
        ).hexdigest()

    # ==================================================================
    # Verification
    # ==================================================================

    def verify(self, plaintext: str, record: HashRecord) -> bool:
        """Return ``True`` when *plaintext* matches *record*.

        Never raises on a mismatch or a malformed record; returns
        ``False`` instead.  Every comparison is constant-time.
        """
        if not isinstance(plaintext, str) or not plaintext:
            return False
        try:
            candidate: bytes = plaintext.encode("utf-8")
        except UnicodeEncodeError:
            return False

        generation = record.generation
        if generation == HashGeneration.ARGON2ID:
            try:
                return self._argon2.verify(record.value, plaintext)
            except (VerifyMismatchError, VerificationError, InvalidHash):
                return False

        if generation == HashGeneration.PBKDF2_SHA256:
            salt_hex, sep, digest_hex = record.value.partition("$")
            if not sep:
                return False
            try:
                salt: bytes = bytes.fromhex(salt_hex)
            except ValueError:
                return False
            computed: str = hashlib.pbkdf2_hmac(
                "sha256", candidate, salt, iterations=self._PBKDF2_ITERATIONS,
            ).hex()
            return hmac.compare_digest(computed, digest_hex.lower())

        if generation == HashGeneration.LEGACY_SHA256:
            return hmac.compare_digest(
                self.legacy_digest(plaintext), record.value.lower(),
            )

        # LEGACY_PLAINTEXT: the stored value is the secret itself.
        return hmac.compare_digest(candidate, record.value.encode("utf-8"))

    # ==================================================================
    # Migration policy
    # ==================================================================

    def needs_migration(self, record: HashRecord) -> bool:
        """Return ``True`` when *record* should be re-hashed.

        True for every generation below the current one, and for a
        current-generation record whose argon2 parameters are weaker
        than the configured ones.
        """
        if record.generation < HashGeneration.current():
            return True
        try:
            return self._argon2.check_needs_rehash(record.value)
        except InvalidHash:
            return True

    @staticmethod
    def is_exposed(record: HashRecord) -> bool:
        """``True`` when the stored value *is* the password.

        Such a record is a stored-secret exposure and is escalated, not
        just migrated.
        """
        return record.is_plaintext

    @staticmethod
    def classify_legacy(stored: str) -> HashRecord:
        """Tag a value from the historical untagged ``password`` column.

        See :meth:`HashRecord.from_legacy`.
        """
        return HashRecord.from_legacy(stored)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_text(plaintext: str) -> None:
        if not isinstance(plaintext, str) or not plaintext:
            raise InvalidInput("Password must be a non-empty string.")
        try:
            plaintext.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise InvalidInput("Password is not representable as text.") from exc
