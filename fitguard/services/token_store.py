"""
Secure Token Store.

Key/value storage with at-rest protection stronger than ordinary
storage, used to persist the session token only.

:class:`SecureTokenStore` is the capability the session layer depends
on; :class:`EncryptedTokenStore` is the on-device implementation.

Security model
--------------
- The encryption key is derived at runtime from machine identity
  (hostname + OS username) via PBKDF2-HMAC-SHA256 with a
  per-installation random salt.  The key is **never** persisted.
- Values are encrypted with AES-256-GCM (authenticated encryption).
  The entry key is bound as associated data, so a ciphertext copied
  under another key fails verification.
- The salt file is created with owner-only permissions (0600).  If it
  cannot be created or read, storing is refused rather than degrading
  to a static salt.

Storage layout (``secure_store`` table)::

    secure_store
    ├── key         TEXT PRIMARY KEY
    ├── ciphertext  BLOB
    ├── nonce       BLOB
    ├── tag         BLOB
    └── updated_at  TEXT
"""

from __future__ import annotations

import os
import platform
import sqlite3
import stat
import threading
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from fitguard.database import DatabaseManager
from fitguard.logger import StructuredLogger
from fitguard.utils.general import machine_identity, to_db_timestamp, utc_now


@runtime_checkable
class SecureTokenStore(Protocol):
    """Capability interface for protected key/value storage."""

    def set(self, key: str, value: str) -> bool: ...  # noqa: E704

    def get(self, key: str) -> Optional[str]: ...  # noqa: E704

    def delete(self, key: str) -> None: ...  # noqa: E704


class EncryptedTokenStore:
    """AES-256-GCM encrypted key/value store in the local database.

    Architecture Note
    -----------------
    This store accesses SQLite directly rather than through a
    Repository, because tokens are infrastructure state, not domain
    data.

    Parameters
    ----------
    db:
        Initialised database manager; the ``secure_store`` table is
        created by ``schema.initialize_schema``.
    logger:
        Structured logger.
    salt_path:
        Location of the per-installation salt file.
    kdf_iterations:
        PBKDF2 iteration count for the key derivation.
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Union[Path, str],
        kdf_iterations: int = _PBKDF2_ITERATIONS,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._salt_path: Path = Path(salt_path).expanduser()
        self._kdf_iterations: int = kdf_iterations
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set(self, key: str, value: str) -> bool:
        """Encrypt and upsert *value* under *key*.

        Returns
        -------
        bool
            ``True`` if the value was encrypted and persisted.  ``False``
            if key derivation or the database write failed (logged, not
            raised).
        """
        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM)
            cipher.update(key.encode("utf-8"))
            ciphertext, tag = cipher.encrypt_and_digest(value.encode("utf-8"))
            nonce: bytes = cipher.nonce
        except (OSError, ValueError) as exc:
            self._logger.warning(
                "Failed to encrypt secure-store entry %s: %s", key, exc,
            )
            return False

        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO secure_store (key, ciphertext, nonce, tag, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        ciphertext = excluded.ciphertext,
                        nonce      = excluded.nonce,
                        tag        = excluded.tag,
                        updated_at = excluded.updated_at
                    """,
                    (key, ciphertext, nonce, tag, to_db_timestamp(utc_now())),
                )
                if not self._db.in_batch:
                    self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to write secure-store entry %s: %s", key, exc,
            )
            return False
        return True

    def get(self, key: str) -> Optional[str]:
        """Decrypt and return the value stored under *key*.

        Returns ``None`` when no entry exists or when it cannot be
        decrypted (corrupted data, tampering, or the machine identity
        changed).
        """
        try:
            with self._db.write_lock:
                row = self._db.sqlite.execute(
                    "SELECT ciphertext, nonce, tag FROM secure_store WHERE key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as exc:
            self._logger.warning(
                "Failed to read secure-store entry %s: %s", key, exc,
            )
            return None

        if row is None:
            return None

        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=row["nonce"])
            cipher.update(key.encode("utf-8"))
            plaintext: bytes = cipher.decrypt_and_verify(row["ciphertext"], row["tag"])
            return plaintext.decode("utf-8")
        except (ValueError, KeyError, OSError) as exc:
            self._logger.warning(
                "Decryption of secure-store entry %s failed (corrupted data or "
                "machine identity changed): %s",
                key,
                exc,
            )
            return None

    def delete(self, key: str) -> None:
        """Remove *key*.  Safe to call when no entry exists."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM secure_store WHERE key = ?", (key,))
                if not self._db.in_batch:
                    self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.error(
                "Failed to delete secure-store entry %s: %s", key, exc,
            )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once) the 256-bit AES key from machine identity.

        The key is deterministic for a given (hostname, OS username,
        salt) triple and is **never** stored on disk.  It is cached for
        the lifetime of this instance.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        with self._key_lock:
            if self._key is None:
                self._key = PBKDF2(
                    password=machine_identity(),
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._kdf_iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        """Return the per-installation random salt, creating it on first use."""
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            # Corrupt or wrong-length -- regenerate
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.",
                len(data),
            )
        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.write_bytes(salt)

        # Restrict file permissions to owner-only.
        if platform.system() != "Windows":
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Per-installation store salt created at %s.", self._salt_path)
        return salt
