"""Tests for generation-aware password hashing and migration policy."""

from __future__ import annotations

import hashlib

import pytest
from argon2 import PasswordHasher, Type

from fitguard.errors import InvalidInput
from fitguard.models.enums import HashGeneration
from fitguard.models.user import HashRecord
from fitguard.services.credential_hasher import CredentialHasher
from tests.conftest import build_config


class TestHashAndVerify:
    def test_hash_uses_current_generation(self, hasher: CredentialHasher) -> None:
        record = hasher.hash("secret1")
        assert record.generation == HashGeneration.ARGON2ID
        assert record.value.startswith("$argon2id$")
        assert "secret1" not in record.value

    def test_same_password_hashes_differently(self, hasher: CredentialHasher) -> None:
        assert hasher.hash("secret1").value != hasher.hash("secret1").value

    @pytest.mark.parametrize("password", ["secret1", "p@ss wörd", "x" * 200, "🏋️lift"])
    def test_verify_matches_own_hash(self, hasher: CredentialHasher, password: str) -> None:
        assert hasher.verify(password, hasher.hash(password)) is True

    def test_verify_rejects_other_password(self, hasher: CredentialHasher) -> None:
        record = hasher.hash("secret1")
        assert hasher.verify("secret2", record) is False
        assert hasher.verify("Secret1", record) is False
        assert hasher.verify("", record) is False

    @pytest.mark.parametrize("bad", ["", None, 42, "\ud800"])
    def test_hash_rejects_unusable_input(self, hasher: CredentialHasher, bad) -> None:
        with pytest.raises(InvalidInput):
            hasher.hash(bad)

    def test_verify_never_raises_on_malformed_record(self, hasher: CredentialHasher) -> None:
        broken = [
            HashRecord(generation=HashGeneration.ARGON2ID, value="not-an-argon2-string"),
            HashRecord(generation=HashGeneration.PBKDF2_SHA256, value="no-separator"),
            HashRecord(generation=HashGeneration.PBKDF2_SHA256, value="zz$abcd"),
            HashRecord(generation=HashGeneration.LEGACY_SHA256, value=""),
        ]
        for record in broken:
            assert hasher.verify("secret1", record) is False

    def test_verify_rejects_lone_surrogate(self, hasher: CredentialHasher) -> None:
        assert hasher.verify("\ud800", hasher.hash("secret1")) is False


class TestLegacyGenerations:
    def test_plaintext_generation_compares_directly(self, hasher: CredentialHasher) -> None:
        record = HashRecord(generation=HashGeneration.LEGACY_PLAINTEXT, value="hunter22")
        assert hasher.verify("hunter22", record) is True
        assert hasher.verify("hunter23", record) is False
        assert hasher.is_exposed(record) is True

    def test_legacy_sha256_uses_application_salt(self, hasher: CredentialHasher) -> None:
        digest = hashlib.sha256(b"secret1fitera_salt_2025").hexdigest()
        record = HashRecord(generation=HashGeneration.LEGACY_SHA256, value=digest.upper())
        assert hasher.verify("secret1", record) is True
        assert hasher.verify("secret2", record) is False
        assert hasher.is_exposed(record) is False

    def test_pbkdf2_round_trip(self, hasher: CredentialHasher) -> None:
        record = hasher.hash_pbkdf2("secret1")
        salt_hex, _, digest_hex = record.value.partition("$")
        assert len(bytes.fromhex(salt_hex)) == 32
        assert len(digest_hex) == 64
        assert hasher.verify("secret1", record) is True
        assert hasher.verify("secret2", record) is False


class TestMigrationPolicy:
    @pytest.mark.parametrize(
        "generation",
        [
            HashGeneration.LEGACY_PLAINTEXT,
            HashGeneration.LEGACY_SHA256,
            HashGeneration.PBKDF2_SHA256,
        ],
    )
    def test_older_generations_need_migration(self, hasher, generation) -> None:
        assert hasher.needs_migration(HashRecord(generation=generation, value="x")) is True

    def test_migrated_record_needs_nothing(self, hasher: CredentialHasher) -> None:
        legacy = HashRecord(generation=HashGeneration.LEGACY_PLAINTEXT, value="secret1")
        assert hasher.needs_migration(legacy) is True
        migrated = hasher.hash("secret1")
        assert hasher.needs_migration(migrated) is False
        assert hasher.verify("secret1", migrated) is True

    def test_weaker_argon2_parameters_need_rehash(self) -> None:
        strong = CredentialHasher(build_config(ARGON2_TIME_COST=2, ARGON2_MEMORY_COST=16))
        weak_value = PasswordHasher(
            time_cost=1, memory_cost=8, parallelism=1, type=Type.ID,
        ).hash("secret1")
        record = HashRecord(generation=HashGeneration.ARGON2ID, value=weak_value)
        assert strong.verify("secret1", record) is True
        assert strong.needs_migration(record) is True

    def test_garbage_argon2_record_needs_migration(self, hasher: CredentialHasher) -> None:
        record = HashRecord(generation=HashGeneration.ARGON2ID, value="garbage")
        assert hasher.needs_migration(record) is True


class TestClassifyLegacy:
    def test_hex_digest_is_sha256(self) -> None:
        digest = "A" * 64
        record = CredentialHasher.classify_legacy(digest)
        assert record.generation == HashGeneration.LEGACY_SHA256
        assert record.value == "a" * 64

    def test_argon2_prefix_is_current(self) -> None:
        record = CredentialHasher.classify_legacy("$argon2id$v=19$m=8,t=1,p=1$abc$def")
        assert record.generation == HashGeneration.ARGON2ID

    @pytest.mark.parametrize("stored", ["password1", "g" * 64, "a" * 63])
    def test_anything_else_is_plaintext(self, stored: str) -> None:
        record = CredentialHasher.classify_legacy(stored)
        assert record.generation == HashGeneration.LEGACY_PLAINTEXT
        assert record.value == stored

    def test_repr_never_shows_value(self) -> None:
        record = HashRecord(generation=HashGeneration.LEGACY_PLAINTEXT, value="hunter22")
        assert "hunter22" not in repr(record)
        assert "hunter22" not in str(record)
