"""
AR Follow-up Automation -- Error Taxonomy

Every failure the dispatch engine or the credential manager can report
has its own type so callers can tell them apart without parsing messages:

    FollowUpError
      ValidationError          malformed template/invoice data (skip job)
      DeliveryError
        TransientDeliveryError timeout, rate limit, 5xx (retry-eligible)
        PermanentDeliveryError bad address, unsubscribed (terminal)
      ClaimConflict            another worker won the claim (silent no-op)
      CredentialError
        CredentialNotFound     no record stored for the owner
        CredentialInvalid      decrypt / auth-tag / decode failure
        CredentialRevoked      refresh token dead, reconnect required
        CredentialRefreshError refresh gave up after bounded retries
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """How a failed ledger entry is classified."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FollowUpError(Exception):
    """Base class for all errors raised by ar_followups."""


class ValidationError(FollowUpError):
    """Template or invoice data cannot produce a message."""

    kind = ErrorKind.VALIDATION


class DeliveryError(FollowUpError):
    """The channel provider rejected or failed to deliver a message."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, code: str = "", response: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.response = response or {}


class TransientDeliveryError(DeliveryError):
    kind = ErrorKind.TRANSIENT


class PermanentDeliveryError(DeliveryError):
    kind = ErrorKind.PERMANENT


class ClaimConflict(FollowUpError):
    """Raised by the ledger when a claim loses to another worker."""

    def __init__(self, invoice_id: str, template_id: str, attempt: int):
        super().__init__(
            f"follow-up ({invoice_id}, {template_id}) attempt {attempt} already claimed"
        )
        self.invoice_id = invoice_id
        self.template_id = template_id
        self.attempt = attempt


class CredentialError(FollowUpError):
    """Base for credential vault / refresher failures."""

    def __init__(self, owner_id: str, message: str = ""):
        super().__init__(message or f"credential error for owner {owner_id}")
        self.owner_id = owner_id


class CredentialNotFound(CredentialError):
    def __init__(self, owner_id: str):
        super().__init__(owner_id, f"no credential stored for owner {owner_id}")


class CredentialInvalid(CredentialError):
    """Stored record failed authentication or could not be decoded."""

    def __init__(self, owner_id: str, reason: str = "authentication failed"):
        super().__init__(owner_id, f"credential for owner {owner_id} is invalid: {reason}")
        self.reason = reason


class CredentialRevoked(CredentialError):
    """The refresh token is dead; the account must be reconnected."""

    def __init__(self, owner_id: str, reason: str = "invalid_grant"):
        super().__init__(
            owner_id,
            f"credential for owner {owner_id} was revoked ({reason}); "
            "reconnect the accounting account",
        )
        self.reason = reason


class CredentialRefreshError(CredentialError):
    """Refresh failed for a transient reason after all attempts."""

    def __init__(self, owner_id: str, reason: str):
        super().__init__(owner_id, f"could not refresh credential for owner {owner_id}: {reason}")
        self.reason = reason
