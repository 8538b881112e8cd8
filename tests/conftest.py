import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from billwatch.core import database as db_module
from billwatch.core.models import Channel
from billwatch.core.settings import Settings
from billwatch.integrations.invoicing import InvoicingHandoff
from billwatch.integrations.source_records import (
    AccountRecord,
    InvoiceRecord,
    ReceiptRecord,
    SourceRecordStore,
    TranscriptEvent,
)
from billwatch.services.detection import AlertEngine
from billwatch.services.entitlements import PlanEntitlementService
from billwatch.services.notifications import DispatchResult, NotificationDispatcher
from billwatch.services.scope_proofs import ScopeProofService
from billwatch.services.sweep import ReconciliationSweep

PAID_ACCOUNT = "acct-paid"
FREE_ACCOUNT = "acct-free"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSourceRecords(SourceRecordStore):
    def __init__(self):
        self.accounts: Dict[str, AccountRecord] = {}
        self.receipts: Dict[str, ReceiptRecord] = {}
        self.invoices: Dict[str, InvoiceRecord] = {}
        self.transcripts: Dict[str, TranscriptEvent] = {}
        self.broken = False

    def _check(self):
        if self.broken:
            raise ConnectionError("source store unavailable")

    def get_account(self, account_id):
        self._check()
        return self.accounts.get(account_id)

    def get_receipt(self, receipt_id):
        self._check()
        return self.receipts.get(receipt_id)

    def get_invoice(self, invoice_id):
        self._check()
        return self.invoices.get(invoice_id)

    def find_invoice_for_scope(self, scope_proof):
        self._check()
        for invoice in self.invoices.values():
            if invoice.account_id != scope_proof.account_id:
                continue
            if invoice.id == scope_proof.invoice_id or invoice.scope_proof_id == scope_proof.id:
                return invoice
            if scope_proof.project_id and invoice.project_id == scope_proof.project_id:
                return invoice
        return None

    def get_transcript_event(self, event_id):
        self._check()
        return self.transcripts.get(event_id)

    def list_draft_invoices(self, created_before):
        self._check()
        return [
            inv for inv in self.invoices.values()
            if inv.is_draft and inv.created_at is not None and inv.created_at <= created_before
        ]


@dataclass
class SentMessage:
    channel: Channel
    template_id: str
    recipient: Optional[str]
    payload: Dict[str, Any]


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent: List[SentMessage] = []
        self.fail_templates: set = set()
        self.raise_templates: set = set()

    def send(self, channel, template_id, recipient, payload):
        if template_id in self.raise_templates:
            raise RuntimeError(f"{template_id} transport crashed")
        if template_id in self.fail_templates:
            return DispatchResult(ok=False, channel=Channel(channel), recipient=recipient, error="transport_down")
        self.sent.append(SentMessage(Channel(channel), template_id, recipient, dict(payload)))
        return DispatchResult(ok=True, channel=Channel(channel), recipient=recipient)

    def templates(self) -> List[str]:
        return [m.template_id for m in self.sent]


class RecordingInvoicing(InvoicingHandoff):
    def __init__(self):
        self.attached: List[str] = []
        self.fail = False

    def attach_approved_scope(self, scope_proof):
        if self.fail:
            raise RuntimeError("invoicing unavailable")
        self.attached.append(scope_proof.id)


class CountingTokens:
    def __init__(self):
        self.count = 0

    def generate(self) -> str:
        self.count += 1
        return f"approval-token-{self.count:04d}"


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("BILLWATCH_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
    db_module._DB_INSTANCE = None
    db = db_module.get_db()
    db.initialize()
    return db


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings():
    return Settings(app_url="https://app.test")


@pytest.fixture()
def source_records():
    records = FakeSourceRecords()
    records.accounts[PAID_ACCOUNT] = AccountRecord(
        id=PAID_ACCOUNT, plan="professional", name="Rivera Renovations", email="owner@rivera.test"
    )
    records.accounts[FREE_ACCOUNT] = AccountRecord(
        id=FREE_ACCOUNT, plan="free", name="Free Fixers", email="owner@free.test"
    )
    return records


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def invoicing():
    return RecordingInvoicing()


@pytest.fixture()
def engine(db, source_records, settings, clock):
    return AlertEngine(
        db=db,
        source_records=source_records,
        entitlements=PlanEntitlementService(source_records),
        settings=settings,
        clock=clock,
    )


@pytest.fixture()
def scope_service(db, source_records, dispatcher, invoicing, engine, settings, clock):
    return ScopeProofService(
        db=db,
        source_records=source_records,
        dispatcher=dispatcher,
        invoicing=invoicing,
        alert_engine=engine,
        tokens=CountingTokens(),
        settings=settings,
        clock=clock,
    )


@pytest.fixture()
def sweep(db, scope_service, engine, source_records, settings, clock):
    return ReconciliationSweep(
        db=db,
        scope_proofs=scope_service,
        alert_engine=engine,
        source_records=source_records,
        entitlements=engine.entitlements,
        settings=settings,
        clock=clock,
    )
