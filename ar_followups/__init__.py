"""AR Follow-up Automation - Scheduled Invoice Reminders and Credential Upkeep.

Scans invoices against per-template day offsets, dispatches email/SMS
reminders exactly once per window through a SQLite-backed ledger, and
keeps the accounting-system OAuth credentials encrypted and fresh.
"""

from .models import (
    Candidate,
    Channel,
    Company,
    CredentialState,
    FollowUp,
    FollowUpStatus,
    Invoice,
    InvoiceStatus,
    MessageTemplate,
)

from .ledger import FollowUpLedger
from .store import Database, Store

__all__ = [
    "Candidate",
    "Channel",
    "Company",
    "CredentialState",
    "Database",
    "FollowUp",
    "FollowUpLedger",
    "FollowUpStatus",
    "Invoice",
    "InvoiceStatus",
    "MessageTemplate",
    "Store",
]
