"""
AR Follow-up Automation -- SQLite Store

Shared durable store for every worker process.  Holds the schema for all
tables and the data access for companies, invoices and message templates.
The follow-up ledger and the credential vault build on ``Database`` from
this module.

Database schema:
    companies          - Accounts that own invoices/templates (pause flag)
    invoices           - Kept current by the accounting-system importer
    message_templates  - Reminder templates (company-specific or global)
    follow_ups         - Ledger: one row per dispatch attempt
    audit_log          - Every ledger transition
    credentials        - Encrypted OAuth token payloads, one per owner
    refresh_locks      - Per-owner lease lock for credential refresh

Usage:
    from ar_followups.store import Database, Store

    db = Database("data/ar_followups.db")
    db.init_schema()
    store = Store(db)
    store.upsert_company(Company(id="c1", name="Acme Plumbing"))
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .clock import from_iso, to_iso
from .errors import ValidationError
from .models import (
    Channel,
    Company,
    Invoice,
    InvoiceStatus,
    MessageTemplate,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS companies (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL DEFAULT '',
    paused              INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS invoices (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
    external_id         TEXT NOT NULL,
    customer_name       TEXT NOT NULL DEFAULT '',
    customer_email      TEXT NOT NULL DEFAULT '',
    customer_phone      TEXT NOT NULL DEFAULT '',
    amount              REAL NOT NULL DEFAULT 0.0,
    balance             REAL,
    currency            TEXT NOT NULL DEFAULT 'USD',
    due_date            TEXT,                             -- YYYY-MM-DD
    status              TEXT NOT NULL DEFAULT 'outstanding'
                        CHECK (status IN ('outstanding', 'paid', 'overdue', 'partially_paid')),
    excluded            INTEGER NOT NULL DEFAULT 0,
    last_followup_at    TEXT,
    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT '',
    UNIQUE (company_id, external_id)
);

CREATE TABLE IF NOT EXISTS message_templates (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT REFERENCES companies(id) ON DELETE CASCADE,  -- NULL = global
    name                TEXT NOT NULL DEFAULT '',
    channel             TEXT NOT NULL CHECK (channel IN ('email', 'sms')),
    day_offset          INTEGER NOT NULL,
    subject             TEXT NOT NULL DEFAULT '',
    body                TEXT NOT NULL,
    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT ''
);

-- Ledger: one row per dispatch attempt of an (invoice, template) pair
CREATE TABLE IF NOT EXISTS follow_ups (
    id                  TEXT PRIMARY KEY,
    invoice_id          TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    template_id         TEXT REFERENCES message_templates(id) ON DELETE SET NULL,
    company_id          TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
    channel             TEXT NOT NULL,
    attempt             INTEGER NOT NULL,
    scheduled_at        TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'sent', 'delivered', 'failed')),

    claimed_at          TEXT,
    claimed_by          TEXT NOT NULL DEFAULT '',
    sent_at             TEXT,
    delivered_at        TEXT,
    failed_at           TEXT,

    error_kind          TEXT NOT NULL DEFAULT '',
    error_message       TEXT NOT NULL DEFAULT '',
    retry_eligible      INTEGER NOT NULL DEFAULT 0,

    -- Immutable snapshot of what was sent
    recipient           TEXT NOT NULL DEFAULT '',
    subject             TEXT NOT NULL DEFAULT '',
    message_content     TEXT NOT NULL DEFAULT '',
    provider_message_id TEXT NOT NULL DEFAULT '',
    response_data       TEXT NOT NULL DEFAULT '{}',       -- JSON dict

    created_at          TEXT NOT NULL DEFAULT '',
    updated_at          TEXT NOT NULL DEFAULT '',
    UNIQUE (invoice_id, template_id, attempt)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    follow_up_id    TEXT NOT NULL,
    action          TEXT NOT NULL,
    actor           TEXT NOT NULL DEFAULT 'system',
    details         TEXT NOT NULL DEFAULT '{}',
    timestamp       TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS credentials (
    owner_id        TEXT PRIMARY KEY,
    ciphertext      BLOB NOT NULL,
    iv              BLOB NOT NULL,
    auth_tag        BLOB NOT NULL,
    state           TEXT NOT NULL DEFAULT 'valid' CHECK (state IN ('valid', 'revoked')),
    revoked_reason  TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL DEFAULT '',
    updated_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS refresh_locks (
    owner_id        TEXT PRIMARY KEY,
    holder          TEXT NOT NULL,
    acquired_at     TEXT NOT NULL,
    expires_at      TEXT NOT NULL
);

-- At most one template per (company, channel, day_offset); globals likewise
CREATE UNIQUE INDEX IF NOT EXISTS ux_templates_company
    ON message_templates(company_id, channel, day_offset) WHERE company_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS ux_templates_global
    ON message_templates(channel, day_offset) WHERE company_id IS NULL;

-- Dedup contract: one successful send per (invoice, template)
CREATE UNIQUE INDEX IF NOT EXISTS ux_follow_ups_success
    ON follow_ups(invoice_id, template_id) WHERE status IN ('sent', 'delivered');
-- At most one in-flight claim per (invoice, template)
CREATE UNIQUE INDEX IF NOT EXISTS ux_follow_ups_inflight
    ON follow_ups(invoice_id, template_id) WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_invoices_company ON invoices(company_id);
CREATE INDEX IF NOT EXISTS idx_invoices_due ON invoices(due_date);
CREATE INDEX IF NOT EXISTS idx_templates_company ON message_templates(company_id);
CREATE INDEX IF NOT EXISTS idx_follow_ups_pair ON follow_ups(invoice_id, template_id);
CREATE INDEX IF NOT EXISTS idx_follow_ups_status ON follow_ups(status);
CREATE INDEX IF NOT EXISTS idx_follow_ups_provider ON follow_ups(provider_message_id);
CREATE INDEX IF NOT EXISTS idx_audit_follow_up ON audit_log(follow_up_id);
"""

# Global defaults seeded by ``Store.seed_default_templates``
DEFAULT_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "Pre-Due Reminder",
        "channel": Channel.EMAIL,
        "day_offset": -1,
        "subject": "Invoice {{ invoice_number }} Due Tomorrow",
        "body": (
            "Hi {{ customer_name }},\n\n"
            "Your invoice {{ invoice_number }} for {{ amount }} is due tomorrow "
            "({{ due_date }}). Please ensure timely payment to avoid any late fees.\n\n"
            "{{ company_name }}"
        ),
    },
    {
        "name": "Due Date Notice",
        "channel": Channel.EMAIL,
        "day_offset": 0,
        "subject": "Invoice {{ invoice_number }} Due Today",
        "body": (
            "Hi {{ customer_name }},\n\n"
            "This is a reminder that invoice {{ invoice_number }} for {{ amount }} "
            "is due today.\n\n{{ company_name }}"
        ),
    },
    {
        "name": "Payment Overdue",
        "channel": Channel.EMAIL,
        "day_offset": 1,
        "subject": "Invoice {{ invoice_number }} - Payment Overdue",
        "body": (
            "Hi {{ customer_name }},\n\n"
            "Your payment for invoice {{ invoice_number }} ({{ amount }}) is now overdue. "
            "Please make the payment as soon as possible.\n\n{{ company_name }}"
        ),
    },
    {
        "name": "Payment Reminder",
        "channel": Channel.EMAIL,
        "day_offset": 3,
        "subject": "Invoice {{ invoice_number }} - Payment Reminder",
        "body": (
            "Hi {{ customer_name }},\n\n"
            "Your payment for invoice {{ invoice_number }} is {{ days_overdue }} days "
            "overdue. Please contact us if you need to discuss payment options.\n\n"
            "{{ company_name }}"
        ),
    },
    {
        "name": "Urgent: Payment Required",
        "channel": Channel.EMAIL,
        "day_offset": 7,
        "subject": "Urgent: Invoice {{ invoice_number }} - Payment Required",
        "body": (
            "Hi {{ customer_name }},\n\n"
            "Invoice {{ invoice_number }} ({{ amount }}) is now {{ days_overdue }} days "
            "overdue. Please make the payment or contact us immediately.\n\n"
            "{{ company_name }}"
        ),
    },
    {
        "name": "Friendly SMS Reminder",
        "channel": Channel.SMS,
        "day_offset": 7,
        "subject": "",
        "body": (
            "Hi {{ customer_name }}, a friendly reminder that invoice {{ invoice_number }} "
            "for {{ amount }} is {{ days_overdue }} days overdue. - {{ company_name }}"
        ),
    },
    {
        "name": "Final Notice",
        "channel": Channel.EMAIL,
        "day_offset": 15,
        "subject": "FINAL NOTICE: Invoice {{ invoice_number }}",
        "body": (
            "{{ customer_name }},\n\n"
            "This is a final notice regarding invoice {{ invoice_number }} "
            "({{ amount }}, due {{ due_date }}). Please contact us immediately.\n\n"
            "{{ company_name }}"
        ),
    },
]


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return to_iso(datetime.now(timezone.utc))


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        return None


def _row_to_company(row: dict[str, Any]) -> Company:
    return Company(
        id=row["id"],
        name=row.get("name", ""),
        paused=bool(row.get("paused", 0)),
        created_at=from_iso(row.get("created_at")),
        updated_at=from_iso(row.get("updated_at")),
    )


def _row_to_invoice(row: dict[str, Any]) -> Invoice:
    status = InvoiceStatus.OUTSTANDING
    for s in InvoiceStatus:
        if s.value == row.get("status"):
            status = s
            break

    return Invoice(
        id=row["id"],
        company_id=row["company_id"],
        external_id=str(row.get("external_id", "")),
        customer_name=row.get("customer_name", ""),
        customer_email=row.get("customer_email", ""),
        customer_phone=row.get("customer_phone", ""),
        amount=float(row.get("amount") or 0.0),
        balance=None if row.get("balance") is None else float(row["balance"]),
        currency=row.get("currency") or "USD",
        due_date=_parse_date(row.get("due_date")),
        status=status,
        excluded=bool(row.get("excluded", 0)),
        last_followup_at=from_iso(row.get("last_followup_at")),
        created_at=from_iso(row.get("created_at")),
        updated_at=from_iso(row.get("updated_at")),
    )


def _row_to_template(row: dict[str, Any]) -> MessageTemplate:
    return MessageTemplate(
        id=row["id"],
        company_id=row.get("company_id"),
        name=row.get("name", ""),
        channel=Channel(row["channel"]),
        day_offset=int(row["day_offset"]),
        subject=row.get("subject", ""),
        body=row.get("body", ""),
        created_at=from_iso(row.get("created_at")),
        updated_at=from_iso(row.get("updated_at")),
    )


# ---------------------------------------------------------------------------
# Database -- connection handling
# ---------------------------------------------------------------------------

class Database:
    """Connection factory for the shared SQLite file.

    Every operation opens its own connection, so instances can be shared
    between threads.  Connections run in autocommit mode; writes that must
    be atomic go through ``transaction()``, which takes SQLite's write lock
    up front (``BEGIN IMMEDIATE``) so concurrent processes serialize there.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
        return conn

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA_SQL)
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; roll back on any exception."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
            else:
                conn.execute("COMMIT")
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Store -- companies, invoices, templates
# ---------------------------------------------------------------------------

class Store:
    """Data access for the rows the follow-up engine reads."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def upsert_company(self, company: Company) -> Company:
        now = _now_iso()
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO companies (id, name, paused, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       paused = excluded.paused,
                       updated_at = excluded.updated_at""",
                (company.id, company.name, 1 if company.paused else 0, now, now),
            )
        return self.get_company(company.id)  # type: ignore[return-value]

    def get_company(self, company_id: str) -> Company | None:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM companies WHERE id = ?", (company_id,)).fetchone()
        return _row_to_company(dict(row)) if row else None

    def list_companies(self) -> list[Company]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM companies ORDER BY name ASC").fetchall()
        return [_row_to_company(dict(r)) for r in rows]

    def set_company_paused(self, company_id: str, paused: bool) -> bool:
        """Pause or resume reminders for a company.  Returns True if found."""
        with self.db.transaction() as conn:
            result = conn.execute(
                "UPDATE companies SET paused = ?, updated_at = ? WHERE id = ?",
                (1 if paused else 0, _now_iso(), company_id),
            )
        if result.rowcount:
            logger.info("Company %s %s", company_id, "paused" if paused else "resumed")
        return result.rowcount > 0

    def delete_company(self, company_id: str) -> bool:
        """Delete a company and, by cascade, its invoices, templates and ledger."""
        with self.db.transaction() as conn:
            result = conn.execute("DELETE FROM companies WHERE id = ?", (company_id,))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def upsert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert or update an invoice keyed on (company_id, external_id).

        This is the seam the accounting-system importer writes through.
        ``excluded`` and ``last_followup_at`` are owned by operators and
        the dispatcher, so an update never overwrites them.
        """
        now = _now_iso()
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO invoices
                   (id, company_id, external_id, customer_name, customer_email,
                    customer_phone, amount, balance, currency, due_date, status,
                    excluded, last_followup_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(company_id, external_id) DO UPDATE SET
                       customer_name = excluded.customer_name,
                       customer_email = excluded.customer_email,
                       customer_phone = excluded.customer_phone,
                       amount = excluded.amount,
                       balance = excluded.balance,
                       currency = excluded.currency,
                       due_date = excluded.due_date,
                       status = excluded.status,
                       updated_at = excluded.updated_at""",
                (
                    invoice.id or str(uuid.uuid4()),
                    invoice.company_id,
                    invoice.external_id,
                    invoice.customer_name,
                    invoice.customer_email,
                    invoice.customer_phone,
                    invoice.amount,
                    invoice.balance,
                    invoice.currency,
                    invoice.due_date.isoformat() if invoice.due_date else None,
                    invoice.status.value,
                    1 if invoice.excluded else 0,
                    to_iso(invoice.last_followup_at),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM invoices WHERE company_id = ? AND external_id = ?",
                (invoice.company_id, invoice.external_id),
            ).fetchone()
        return _row_to_invoice(dict(row))

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return _row_to_invoice(dict(row)) if row else None

    def list_invoices(self, company_id: str | None = None) -> list[Invoice]:
        sql = "SELECT * FROM invoices"
        params: list[Any] = []
        if company_id:
            sql += " WHERE company_id = ?"
            params.append(company_id)
        sql += " ORDER BY due_date ASC"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_invoice(dict(r)) for r in rows]

    def set_invoice_excluded(self, invoice_id: str, excluded: bool) -> bool:
        """Toggle the manual opt-out flag.  Returns True if the invoice exists."""
        with self.db.transaction() as conn:
            result = conn.execute(
                "UPDATE invoices SET excluded = ?, updated_at = ? WHERE id = ?",
                (1 if excluded else 0, _now_iso(), invoice_id),
            )
        if result.rowcount:
            logger.info("Invoice %s %s", invoice_id, "excluded" if excluded else "included")
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def add_template(self, template: MessageTemplate) -> MessageTemplate:
        """Insert a template.

        Raises:
            ValidationError: If a template already exists for the same
                (company, channel, day_offset).
        """
        now = _now_iso()
        template_id = template.id or str(uuid.uuid4())
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """INSERT INTO message_templates
                       (id, company_id, name, channel, day_offset, subject, body,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        template_id,
                        template.company_id,
                        template.name,
                        template.channel.value,
                        template.day_offset,
                        template.subject,
                        template.body,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(
                f"template for company={template.company_id or 'global'} "
                f"channel={template.channel.value} day_offset={template.day_offset} "
                f"already exists"
            ) from exc
        return self.get_template(template_id)  # type: ignore[return-value]

    def update_template(
        self,
        template_id: str,
        subject: str | None = None,
        body: str | None = None,
        name: str | None = None,
    ) -> bool:
        """Edit template text.  Ledger rows keep their rendered snapshot."""
        updates: dict[str, Any] = {}
        if subject is not None:
            updates["subject"] = subject
        if body is not None:
            updates["body"] = body
        if name is not None:
            updates["name"] = name
        if not updates:
            return False
        updates["updated_at"] = _now_iso()

        set_clause = ", ".join(f"{k} = ?" for k in updates)
        with self.db.transaction() as conn:
            result = conn.execute(
                f"UPDATE message_templates SET {set_clause} WHERE id = ?",
                list(updates.values()) + [template_id],
            )
        return result.rowcount > 0

    def get_template(self, template_id: str) -> MessageTemplate | None:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM message_templates WHERE id = ?", (template_id,)
            ).fetchone()
        return _row_to_template(dict(row)) if row else None

    def list_templates(self, company_id: str | None = None, include_global: bool = True) -> list[MessageTemplate]:
        """Templates visible to a company (its own plus globals), or all globals."""
        clauses = []
        params: list[Any] = []
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if include_global:
            clauses.append("company_id IS NULL")
        sql = "SELECT * FROM message_templates"
        if clauses:
            sql += " WHERE " + " OR ".join(clauses)
        sql += " ORDER BY day_offset ASC, channel ASC"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_template(dict(r)) for r in rows]

    def delete_template(self, template_id: str) -> bool:
        with self.db.transaction() as conn:
            result = conn.execute("DELETE FROM message_templates WHERE id = ?", (template_id,))
        return result.rowcount > 0

    def seed_default_templates(self) -> int:
        """Insert the global default templates that are missing.  Returns count added."""
        added = 0
        existing = {(t.channel, t.day_offset) for t in self.list_templates()}
        for fields in DEFAULT_TEMPLATES:
            if (fields["channel"], fields["day_offset"]) in existing:
                continue
            self.add_template(MessageTemplate(id="", company_id=None, **fields))
            added += 1
        logger.info("Seeded %d default templates", added)
        return added
