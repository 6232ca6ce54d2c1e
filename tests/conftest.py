"""Shared fixtures: a fresh SQLite store per test, a frozen clock, fake providers."""

import threading
from datetime import date, datetime, timezone

import pytest

from ar_followups.channels import DeliveryResult
from ar_followups.clock import FrozenClock
from ar_followups.config import FollowUpConfig
from ar_followups.ledger import FollowUpLedger
from ar_followups.models import Channel, Company, Invoice, InvoiceStatus, MessageTemplate
from ar_followups.store import Database, Store
from ar_followups.templates import TemplateResolver


class FakeProvider:
    """Channel provider that records messages instead of sending them.

    ``errors`` is consumed one per send; ``None`` entries mean success.
    """

    def __init__(self, channel=Channel.EMAIL, errors=None, on_send=None):
        self.channel = channel
        self.errors = list(errors or [])
        self.on_send = on_send
        self.sent = []
        self._lock = threading.Lock()

    def send(self, to, subject, body):
        if self.on_send is not None:
            self.on_send()
        with self._lock:
            error = self.errors.pop(0) if self.errors else None
            if error is not None:
                raise error
            self.sent.append({"to": to, "subject": subject, "body": body})
            n = len(self.sent)
        return DeliveryResult(provider_message_id=f"{self.channel.value}-{n}", status="sent")


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 1, 9, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(tmp_path):
    cfg = FollowUpConfig()
    cfg.database.path = str(tmp_path / "ar_followups.db")
    cfg.dispatch.worker_id = "worker-test"
    cfg.credentials.master_key = "test-master-key"
    cfg.credentials.kdf_iterations = 1_000
    cfg.credentials.lock_wait_seconds = 5
    cfg.outbox.eml_dir = str(tmp_path / "outbox")
    return cfg


@pytest.fixture
def db(config):
    database = Database(config.database.resolved_path)
    database.init_schema()
    return database


@pytest.fixture
def store(db):
    return Store(db)


@pytest.fixture
def ledger(db):
    return FollowUpLedger(db)


@pytest.fixture
def resolver(store, config):
    return TemplateResolver(store, config.templates)


@pytest.fixture
def company(store):
    return store.upsert_company(Company(id="c1", name="Acme Plumbing"))


@pytest.fixture
def make_invoice(store, company):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "id": f"inv-{counter['n']}",
            "company_id": company.id,
            "external_id": f"INV-{1000 + counter['n']}",
            "customer_name": "Jane Smith",
            "customer_email": "jane@example.com",
            "customer_phone": "555-867-5309",
            "amount": 1510.0,
            "due_date": date(2025, 1, 10),
            "status": InvoiceStatus.OUTSTANDING,
        }
        fields.update(overrides)
        return store.upsert_invoice(Invoice(**fields))

    return _make


@pytest.fixture
def make_template(store):
    def _make(channel=Channel.EMAIL, day_offset=0, company_id=None, **overrides):
        fields = {
            "id": "",
            "channel": channel,
            "day_offset": day_offset,
            "company_id": company_id,
            "name": f"{channel.value} {day_offset:+d}",
            "subject": "Invoice {{ invoice_number }}" if channel is Channel.EMAIL else "",
            "body": "Hi {{ customer_name }}, invoice {{ invoice_number }} for {{ amount }} "
                    "is due {{ due_date }}. {{ company_name }}",
        }
        fields.update(overrides)
        return store.add_template(MessageTemplate(**fields))

    return _make


@pytest.fixture
def email_provider():
    return FakeProvider(Channel.EMAIL)


@pytest.fixture
def sms_provider():
    return FakeProvider(Channel.SMS)
