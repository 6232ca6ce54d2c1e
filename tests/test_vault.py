"""Tests for ar_followups.vault -- AES-GCM storage, tamper detection, revocation."""

import pytest

from ar_followups.config import CredentialSettings
from ar_followups.errors import (
    CredentialInvalid,
    CredentialNotFound,
    CredentialRevoked,
    ValidationError,
)
from ar_followups.vault import STATE_REVOKED, STATE_VALID, CredentialVault, derive_key

PAYLOAD = {
    "access_token": "at-1",
    "refresh_token": "rt-1",
    "expires_in": 3600,
    "realm_id": "9130",
}


@pytest.fixture
def vault(db, config):
    return CredentialVault(db, config.credentials)


def _flip(value: bytes, index: int = 0) -> bytes:
    data = bytearray(value)
    data[index] ^= 0x01
    return bytes(data)


def _overwrite(db, owner_id, **columns):
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with db.transaction() as conn:
        conn.execute(
            f"UPDATE credentials SET {assignments} WHERE owner_id = ?",
            (*columns.values(), owner_id),
        )


# ============================================================================
# Round trip
# ============================================================================

class TestStoreRetrieve:

    def test_round_trip(self, vault):
        vault.store("realm-1", PAYLOAD)
        assert vault.retrieve("realm-1") == PAYLOAD

    def test_record_is_encrypted(self, vault):
        vault.store("realm-1", PAYLOAD)
        record = vault.record("realm-1")
        assert b"rt-1" not in record.ciphertext
        assert len(record.iv) == 12
        assert len(record.auth_tag) == 16
        assert record.state == STATE_VALID

    def test_fresh_nonce_per_write(self, vault):
        vault.store("realm-1", PAYLOAD)
        first = vault.record("realm-1").iv
        vault.store("realm-1", PAYLOAD)
        assert vault.record("realm-1").iv != first

    def test_store_replaces_and_clears_revocation(self, vault):
        vault.store("realm-1", PAYLOAD)
        vault.revoke("realm-1", "invalid_grant")
        vault.store("realm-1", {**PAYLOAD, "refresh_token": "rt-2"})
        assert vault.retrieve("realm-1")["refresh_token"] == "rt-2"
        assert vault.record("realm-1").revoked_reason == ""

    @pytest.mark.parametrize("payload", [["not", "a", "dict"], {"when": object()}])
    def test_rejects_bad_payload(self, vault, payload):
        with pytest.raises(ValidationError):
            vault.store("realm-1", payload)

    def test_requires_master_key(self, db):
        with pytest.raises(ValueError):
            CredentialVault(db, CredentialSettings(master_key="", kdf_iterations=1000))

    def test_derive_key_is_deterministic(self):
        assert derive_key("secret", "salt", 1000) == derive_key("secret", "salt", 1000)
        assert derive_key("secret", "salt", 1000) != derive_key("other", "salt", 1000)
        assert len(derive_key("secret", "salt", 1000)) == 32


# ============================================================================
# Integrity
# ============================================================================

class TestIntegrity:

    def test_tampered_ciphertext(self, vault, db):
        vault.store("realm-1", PAYLOAD)
        _overwrite(db, "realm-1", ciphertext=_flip(vault.record("realm-1").ciphertext))
        with pytest.raises(CredentialInvalid):
            vault.retrieve("realm-1")

    def test_tampered_tag(self, vault, db):
        vault.store("realm-1", PAYLOAD)
        _overwrite(db, "realm-1", auth_tag=_flip(vault.record("realm-1").auth_tag, 15))
        with pytest.raises(CredentialInvalid):
            vault.retrieve("realm-1")

    def test_row_copied_to_other_owner(self, vault, db):
        vault.store("realm-1", PAYLOAD)
        vault.store("realm-2", {"access_token": "other"})
        record = vault.record("realm-1")
        _overwrite(db, "realm-2", ciphertext=record.ciphertext, iv=record.iv, auth_tag=record.auth_tag)
        with pytest.raises(CredentialInvalid):
            vault.retrieve("realm-2")

    def test_malformed_iv(self, vault, db):
        vault.store("realm-1", PAYLOAD)
        _overwrite(db, "realm-1", iv=b"short")
        with pytest.raises(CredentialInvalid):
            vault.retrieve("realm-1")

    def test_wrong_master_key(self, vault, db):
        vault.store("realm-1", PAYLOAD)
        other = CredentialVault(db, CredentialSettings(master_key="another-key", kdf_iterations=1000))
        with pytest.raises(CredentialInvalid):
            other.retrieve("realm-1")


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:

    def test_not_found(self, vault):
        with pytest.raises(CredentialNotFound):
            vault.retrieve("nobody")
        assert vault.exists("nobody") is False

    def test_revoked(self, vault):
        vault.store("realm-1", PAYLOAD)
        assert vault.revoke("realm-1", "invalid_grant") is True
        with pytest.raises(CredentialRevoked) as info:
            vault.retrieve("realm-1")
        assert info.value.reason == "invalid_grant"
        assert vault.record("realm-1").state == STATE_REVOKED

    def test_revoke_unknown(self, vault):
        assert vault.revoke("nobody") is False

    def test_delete(self, vault):
        vault.store("realm-1", PAYLOAD)
        assert vault.delete("realm-1") is True
        assert vault.exists("realm-1") is False

    def test_owners_by_state(self, vault):
        vault.store("realm-b", PAYLOAD)
        vault.store("realm-a", PAYLOAD)
        vault.revoke("realm-b")
        assert vault.owners() == ["realm-a", "realm-b"]
        assert vault.owners(STATE_VALID) == ["realm-a"]
        assert vault.owners(STATE_REVOKED) == ["realm-b"]


# ============================================================================
# Compare-and-set
# ============================================================================

class TestReplace:

    ROTATED = {**PAYLOAD, "access_token": "at-2", "refresh_token": "rt-2"}

    def test_replaces_when_token_matches(self, vault):
        vault.store("realm-1", PAYLOAD)
        assert vault.replace("realm-1", self.ROTATED, expected_refresh_token="rt-1") is True
        assert vault.retrieve("realm-1")["refresh_token"] == "rt-2"

    def test_keeps_newer_rotation(self, vault):
        vault.store("realm-1", {**PAYLOAD, "refresh_token": "rt-reconnected"})
        assert vault.replace("realm-1", self.ROTATED, expected_refresh_token="rt-1") is False
        assert vault.retrieve("realm-1")["refresh_token"] == "rt-reconnected"

    def test_does_not_revive_revoked(self, vault):
        vault.store("realm-1", PAYLOAD)
        vault.revoke("realm-1", "disconnected")
        assert vault.replace("realm-1", self.ROTATED, expected_refresh_token="rt-1") is False
        assert vault.record("realm-1").state == STATE_REVOKED

    def test_missing_owner(self, vault):
        assert vault.replace("nobody", self.ROTATED, expected_refresh_token="rt-1") is False
        assert vault.exists("nobody") is False
