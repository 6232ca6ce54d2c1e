"""
AR Follow-up Automation -- Credential Vault

Stores each owner's OAuth token payload under authenticated encryption.

    payload (dict) --JSON--> AES-256-GCM(key, fresh 12-byte nonce, aad=owner_id)
                   --> (ciphertext, iv, auth_tag) row in ``credentials``

The key is derived from the configured master secret with
PBKDF2-HMAC-SHA256.  Binding the owner id as associated data means a row
copied onto another owner fails authentication instead of decrypting.

Usage:
    vault = CredentialVault(db, config.credentials)
    vault.store("realm-123", {"access_token": "...", "refresh_token": "..."})
    payload = vault.retrieve("realm-123")
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .clock import from_iso
from .config import CredentialSettings
from .errors import (
    CredentialInvalid,
    CredentialNotFound,
    CredentialRevoked,
    ValidationError,
)
from .models import CredentialRecord
from .store import Database, _now_iso

logger = logging.getLogger(__name__)

_KEY_BYTES = 32      # AES-256
_NONCE_BYTES = 12
_TAG_BYTES = 16

STATE_VALID = "valid"
STATE_REVOKED = "revoked"


def derive_key(master_key: str, salt: str, iterations: int) -> bytes:
    """Derive the 256-bit vault key from the master secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(master_key.encode("utf-8"))


def _row_to_record(row: dict[str, Any]) -> CredentialRecord:
    return CredentialRecord(
        owner_id=row["owner_id"],
        ciphertext=bytes(row["ciphertext"]),
        iv=bytes(row["iv"]),
        auth_tag=bytes(row["auth_tag"]),
        state=row.get("state", STATE_VALID),
        revoked_reason=row.get("revoked_reason", ""),
        created_at=from_iso(row.get("created_at")),
        updated_at=from_iso(row.get("updated_at")),
    )


class CredentialVault:
    """Encrypted per-owner token storage."""

    def __init__(self, db: Database, settings: Optional[CredentialSettings] = None):
        self.db = db
        self.settings = settings or CredentialSettings()
        if not self.settings.master_key:
            raise ValueError(
                "credential master key is not configured; set AR_FOLLOWUPS_MASTER_KEY"
            )
        self._aead = AESGCM(derive_key(
            self.settings.master_key,
            self.settings.kdf_salt,
            self.settings.kdf_iterations,
        ))

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def store(self, owner_id: str, payload: dict[str, Any]) -> None:
        """Encrypt and persist ``payload``, replacing any previous record.

        Raises:
            ValidationError: If the payload is not a JSON-serializable dict.
        """
        sealed = self._seal(owner_id, payload)
        with self.db.transaction() as conn:
            self._write(conn, owner_id, sealed)
        logger.debug("Stored credential for owner %s", owner_id)

    def replace(self, owner_id: str, payload: dict[str, Any], expected_refresh_token: str) -> bool:
        """Store ``payload`` only if the record still holds ``expected_refresh_token``.

        The check and the write share one transaction.  Returns False, and
        writes nothing, when the record is gone, revoked, unreadable or was
        rotated to a different refresh token in the meantime.
        """
        sealed = self._seal(owner_id, payload)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE owner_id = ?", (owner_id,)).fetchone()
            if row is None:
                return False
            record = _row_to_record(dict(row))
            if record.state == STATE_REVOKED:
                return False
            try:
                current = self.decrypt(record)
            except CredentialInvalid:
                return False
            if current.get("refresh_token") != expected_refresh_token:
                return False
            self._write(conn, owner_id, sealed)
        logger.debug("Replaced credential for owner %s", owner_id)
        return True

    def _seal(self, owner_id: str, payload: dict[str, Any]) -> tuple[bytes, bytes, bytes]:
        if not isinstance(payload, dict):
            raise ValidationError("credential payload must be a dict")
        try:
            plaintext = json.dumps(payload, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"credential payload is not JSON-serializable: {exc}") from exc

        iv = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(iv, plaintext, owner_id.encode("utf-8"))
        return sealed[:-_TAG_BYTES], iv, sealed[-_TAG_BYTES:]

    @staticmethod
    def _write(conn, owner_id: str, sealed: tuple[bytes, bytes, bytes]) -> None:
        ciphertext, iv, auth_tag = sealed
        now = _now_iso()
        conn.execute(
            """INSERT INTO credentials
               (owner_id, ciphertext, iv, auth_tag, state, revoked_reason, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, '', ?, ?)
               ON CONFLICT(owner_id) DO UPDATE SET
                   ciphertext = excluded.ciphertext,
                   iv = excluded.iv,
                   auth_tag = excluded.auth_tag,
                   state = excluded.state,
                   revoked_reason = '',
                   updated_at = excluded.updated_at""",
            (owner_id, ciphertext, iv, auth_tag, STATE_VALID, now, now),
        )

    def revoke(self, owner_id: str, reason: str = "revoked") -> bool:
        """Mark an owner's credential unusable until it is stored again."""
        with self.db.transaction() as conn:
            result = conn.execute(
                "UPDATE credentials SET state = ?, revoked_reason = ?, updated_at = ? WHERE owner_id = ?",
                (STATE_REVOKED, reason, _now_iso(), owner_id),
            )
        if result.rowcount:
            logger.warning("Credential for owner %s revoked: %s", owner_id, reason)
        return result.rowcount > 0

    def delete(self, owner_id: str) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute("DELETE FROM credentials WHERE owner_id = ?", (owner_id,))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def record(self, owner_id: str) -> CredentialRecord | None:
        """The stored (still encrypted) record, or None."""
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE owner_id = ?", (owner_id,)).fetchone()
        return _row_to_record(dict(row)) if row else None

    def retrieve(self, owner_id: str) -> dict[str, Any]:
        """Decrypt and return an owner's payload.

        Raises:
            CredentialNotFound: Nothing stored for ``owner_id``.
            CredentialRevoked: The record was revoked.
            CredentialInvalid: Authentication failed or the plaintext
                is not a JSON object.
        """
        record = self.record(owner_id)
        if record is None:
            raise CredentialNotFound(owner_id)
        if record.state == STATE_REVOKED:
            raise CredentialRevoked(owner_id, record.revoked_reason or "revoked")
        return self.decrypt(record)

    def decrypt(self, record: CredentialRecord) -> dict[str, Any]:
        owner_id = record.owner_id
        if len(record.iv) != _NONCE_BYTES or len(record.auth_tag) != _TAG_BYTES:
            raise CredentialInvalid(owner_id, "malformed record")
        try:
            plaintext = self._aead.decrypt(
                record.iv, record.ciphertext + record.auth_tag, owner_id.encode("utf-8")
            )
        except InvalidTag as exc:
            raise CredentialInvalid(owner_id, "authentication tag mismatch") from exc

        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CredentialInvalid(owner_id, "payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise CredentialInvalid(owner_id, "payload is not a JSON object")
        return payload

    def exists(self, owner_id: str) -> bool:
        with self.db.read() as conn:
            row = conn.execute("SELECT 1 FROM credentials WHERE owner_id = ?", (owner_id,)).fetchone()
        return row is not None

    def owners(self, state: Optional[str] = None) -> list[str]:
        """Owner ids with a stored credential, optionally filtered by state."""
        with self.db.read() as conn:
            if state:
                rows = conn.execute(
                    "SELECT owner_id FROM credentials WHERE state = ? ORDER BY owner_id", (state,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT owner_id FROM credentials ORDER BY owner_id").fetchall()
        return [r["owner_id"] for r in rows]
