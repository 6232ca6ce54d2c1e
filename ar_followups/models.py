"""Data models for AR follow-up automation.

All models are plain dataclasses with type hints.  No ORM -- rows are
converted to and from these dataclasses by ``store`` and ``ledger``.

Persisted rows:
  Company, Invoice, MessageTemplate, FollowUp (ledger entry),
  CredentialRecord

Transient values:
  Candidate (one scanner result), TokenPayload helpers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvoiceStatus(Enum):
    """Invoice status as written by the accounting-system importer."""

    OUTSTANDING = "outstanding"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIALLY_PAID = "partially_paid"

    @property
    def is_collectible(self) -> bool:
        """True when reminders may still be sent for this invoice."""
        return self is not InvoiceStatus.PAID


COLLECTIBLE_STATUSES: tuple[InvoiceStatus, ...] = tuple(
    s for s in InvoiceStatus if s.is_collectible
)


class Channel(Enum):
    """Delivery channel of a message template."""

    EMAIL = "email"
    SMS = "sms"


class FollowUpStatus(Enum):
    """Lifecycle states for a ledger entry.

        PENDING -> SENT -> DELIVERED
                |-> FAILED
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self in (FollowUpStatus.SENT, FollowUpStatus.DELIVERED)


class CredentialState(Enum):
    """Refresher view of an owner's credential."""

    VALID = "valid"
    NEARING_EXPIRY = "nearing_expiry"
    REFRESHING = "refreshing"
    REVOKED = "revoked"
    MISSING = "missing"
    INVALID = "invalid"


# ---------------------------------------------------------------------------
# Core Data Models
# ---------------------------------------------------------------------------

@dataclass
class Company:
    """A customer account of the platform.  Owns invoices and templates."""

    id: str
    name: str
    paused: bool = False                    # account suspended -> no new reminders
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Invoice:
    """An invoice row kept current by the accounting-system importer."""

    # --- identifiers ---
    id: str
    company_id: str
    external_id: str                        # accounting-system invoice id

    # --- customer ---
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""

    # --- financials ---
    amount: float = 0.0
    balance: float | None = None            # open balance; None -> amount
    currency: str = "USD"

    # --- dates & status ---
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.OUTSTANDING

    # --- follow-up tracking ---
    excluded: bool = False                  # manual opt-out
    last_followup_at: datetime | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def open_balance(self) -> float:
        return self.amount if self.balance is None else self.balance

    @property
    def is_followup_eligible(self) -> bool:
        """True when the invoice itself allows reminders."""
        return (
            not self.excluded
            and self.status.is_collectible
            and self.due_date is not None
            and self.open_balance > 0
        )

    def days_overdue(self, today: date) -> int:
        """Days past the due date (negative before it is due)."""
        if self.due_date is None:
            return 0
        return (today - self.due_date).days


@dataclass
class MessageTemplate:
    """A reminder template.  ``company_id`` None means a global default."""

    id: str
    channel: Channel
    day_offset: int
    body: str
    subject: str = ""
    name: str = ""
    company_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_global(self) -> bool:
        return self.company_id is None


@dataclass
class FollowUp:
    """One dispatch attempt for an (invoice, template) pair."""

    id: str
    invoice_id: str
    template_id: str
    company_id: str
    channel: Channel
    attempt: int
    scheduled_at: datetime
    status: FollowUpStatus = FollowUpStatus.PENDING

    claimed_at: datetime | None = None
    claimed_by: str = ""
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None

    error_kind: str = ""
    error_message: str = ""
    retry_eligible: bool = False

    recipient: str = ""
    subject: str = ""
    message_content: str = ""
    provider_message_id: str = ""
    response_data: dict[str, Any] = field(default_factory=dict)

    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CredentialRecord:
    """Encrypted token payload as stored.  Never holds plaintext."""

    owner_id: str
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    state: str = CredentialState.VALID.value
    revoked_reason: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Candidate:
    """A scanner result: an (invoice, template) pair whose window is open."""

    invoice: Invoice
    template: MessageTemplate
    scheduled_at: datetime
    prior_attempts: int = 0                 # ledger rows already written for the pair
    company_name: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.invoice.id, self.template.id)

    @property
    def next_attempt(self) -> int:
        return self.prior_attempts + 1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def scheduled_at_for(due_date: date, day_offset: int) -> datetime:
    """Send instant of a template for an invoice: due date + offset, 00:00 UTC."""
    return datetime.combine(due_date + timedelta(days=day_offset), time(0), tzinfo=timezone.utc)


def token_expires_at(payload: dict[str, Any], default_expires_in: int = 3600) -> datetime | None:
    """When the access token in ``payload`` expires.

    Uses ``issued_at`` (or the older ``created_at`` / ``connected_at``
    keys) plus ``expires_in`` seconds.  Returns None when the payload
    carries no issue time.
    """
    issued = payload.get("issued_at") or payload.get("created_at") or payload.get("connected_at")
    if not issued:
        return None
    try:
        issued_at = datetime.fromisoformat(str(issued))
    except ValueError:
        return None
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    try:
        expires_in = int(payload.get("expires_in") or default_expires_in)
    except (TypeError, ValueError):
        expires_in = default_expires_in
    return issued_at + timedelta(seconds=expires_in)
