"""Tests for ar_followups.store -- schema, companies, invoices, templates.

Covers:
- Schema creation is idempotent
- Company upsert / pause / cascade delete
- Invoice upsert keyed on (company_id, external_id), operator flags preserved
- Template uniqueness per (company, channel, day_offset) and global defaults
"""

from datetime import date

import pytest

from ar_followups.errors import ValidationError
from ar_followups.models import Channel, Company, Invoice, InvoiceStatus, MessageTemplate
from ar_followups.store import DEFAULT_TEMPLATES


# ============================================================================
# Schema
# ============================================================================

class TestSchema:

    def test_init_schema_twice(self, db):
        db.init_schema()
        db.init_schema()
        with db.read() as conn:
            tables = {
                r["name"]
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        assert {"companies", "invoices", "message_templates", "follow_ups",
                "audit_log", "credentials", "refresh_locks"} <= tables

    def test_transaction_rolls_back_on_error(self, db, store, company):
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute("UPDATE companies SET name = 'changed' WHERE id = ?", (company.id,))
                raise RuntimeError("boom")
        assert store.get_company(company.id).name == "Acme Plumbing"


# ============================================================================
# Companies
# ============================================================================

class TestCompanies:

    def test_upsert_and_get(self, store):
        store.upsert_company(Company(id="c9", name="Bright Dental"))
        company = store.get_company("c9")
        assert company.name == "Bright Dental"
        assert company.paused is False
        assert company.created_at is not None

    def test_upsert_updates_name(self, store, company):
        store.upsert_company(Company(id=company.id, name="Acme Plumbing LLC"))
        assert store.get_company(company.id).name == "Acme Plumbing LLC"

    def test_pause_and_resume(self, store, company):
        assert store.set_company_paused(company.id, True) is True
        assert store.get_company(company.id).paused is True
        assert store.set_company_paused(company.id, False) is True
        assert store.get_company(company.id).paused is False

    def test_pause_unknown_company(self, store):
        assert store.set_company_paused("nope", True) is False

    def test_delete_cascades_to_invoices(self, store, company, make_invoice):
        invoice = make_invoice()
        assert store.delete_company(company.id) is True
        assert store.get_invoice(invoice.id) is None


# ============================================================================
# Invoices
# ============================================================================

class TestInvoices:

    def test_round_trip(self, make_invoice, store):
        invoice = make_invoice(balance=500.0, currency="CAD")
        loaded = store.get_invoice(invoice.id)
        assert loaded.external_id == invoice.external_id
        assert loaded.due_date == date(2025, 1, 10)
        assert loaded.status is InvoiceStatus.OUTSTANDING
        assert loaded.open_balance == 500.0
        assert loaded.currency == "CAD"

    def test_upsert_same_external_id_updates(self, store, company, make_invoice):
        invoice = make_invoice()
        updated = store.upsert_invoice(Invoice(
            id="other-id",
            company_id=company.id,
            external_id=invoice.external_id,
            amount=99.0,
            due_date=date(2025, 2, 1),
            status=InvoiceStatus.PAID,
        ))
        assert updated.id == invoice.id
        assert updated.amount == 99.0
        assert updated.status is InvoiceStatus.PAID
        assert len(store.list_invoices(company.id)) == 1

    def test_importer_update_keeps_exclusion(self, store, company, make_invoice):
        invoice = make_invoice()
        store.set_invoice_excluded(invoice.id, True)
        store.upsert_invoice(Invoice(
            id="", company_id=company.id, external_id=invoice.external_id,
            amount=10.0, due_date=invoice.due_date,
        ))
        assert store.get_invoice(invoice.id).excluded is True

    def test_set_excluded_unknown(self, store):
        assert store.set_invoice_excluded("missing", True) is False

    @pytest.mark.parametrize("status,eligible", [
        (InvoiceStatus.OUTSTANDING, True),
        (InvoiceStatus.OVERDUE, True),
        (InvoiceStatus.PARTIALLY_PAID, True),
        (InvoiceStatus.PAID, False),
    ])
    def test_followup_eligibility_by_status(self, make_invoice, status, eligible):
        assert make_invoice(status=status).is_followup_eligible is eligible

    def test_zero_balance_not_eligible(self, make_invoice):
        assert make_invoice(balance=0.0).is_followup_eligible is False

    def test_days_overdue(self, make_invoice):
        invoice = make_invoice(due_date=date(2025, 1, 10))
        assert invoice.days_overdue(date(2025, 1, 13)) == 3
        assert invoice.days_overdue(date(2025, 1, 9)) == -1


# ============================================================================
# Templates
# ============================================================================

class TestTemplates:

    def test_duplicate_global_rejected(self, make_template):
        make_template(Channel.EMAIL, -1)
        with pytest.raises(ValidationError):
            make_template(Channel.EMAIL, -1)

    def test_company_and_global_may_share_offset(self, make_template, company):
        make_template(Channel.EMAIL, 3)
        override = make_template(Channel.EMAIL, 3, company_id=company.id)
        assert override.company_id == company.id

    def test_same_offset_different_channel(self, make_template):
        make_template(Channel.EMAIL, 7)
        sms = make_template(Channel.SMS, 7)
        assert sms.channel is Channel.SMS

    def test_list_templates_scoping(self, store, make_template, company):
        store.upsert_company(Company(id="c2", name="Other Co"))
        make_template(Channel.EMAIL, 0)
        make_template(Channel.EMAIL, 1, company_id=company.id)
        make_template(Channel.EMAIL, 2, company_id="c2")

        visible = store.list_templates(company_id=company.id)
        assert sorted(t.day_offset for t in visible) == [0, 1]
        assert [t.day_offset for t in store.list_templates()] == [0]

    def test_update_template(self, store, make_template):
        template = make_template(Channel.EMAIL, 0)
        assert store.update_template(template.id, body="New body") is True
        assert store.get_template(template.id).body == "New body"
        assert store.update_template(template.id) is False

    def test_seed_default_templates_idempotent(self, store):
        assert store.seed_default_templates() == len(DEFAULT_TEMPLATES)
        assert store.seed_default_templates() == 0
        assert len(store.list_templates()) == len(DEFAULT_TEMPLATES)

    def test_template_model_is_global(self):
        template = MessageTemplate(id="t", channel=Channel.SMS, day_offset=1, body="x")
        assert template.is_global is True
