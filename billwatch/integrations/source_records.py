"""
Read-only access to the platform's own records: accounts, receipts,
invoices and project (voice) events.

Billwatch never writes these tables. Detection rules and the entitlement gate
read through ``SourceRecordStore`` so tests and other deployments can plug in
their own backing store.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billwatch.core.database import BillwatchDB, get_db
from billwatch.core.models import Channel, ScopeProof, parse_iso, to_decimal, to_iso

logger = logging.getLogger(__name__)

INVOICE_STATUS_DRAFT = "draft"
VOICE_EVENT_SOURCE = "voice"


@dataclass(frozen=True)
class AccountRecord:
    id: str
    plan: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    slack_channel: Optional[str] = None
    preferred_channel: Channel = Channel.EMAIL

    def contact_for(self, channel: Channel) -> Optional[str]:
        return {
            Channel.EMAIL: self.email,
            Channel.SMS: self.phone,
            Channel.SLACK: self.slack_channel,
        }.get(channel)


@dataclass(frozen=True)
class ReceiptRecord:
    id: str
    account_id: str
    total: Optional[Decimal] = None
    currency: str = "USD"
    billable: bool = True
    invoice_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None


@dataclass(frozen=True)
class InvoiceRecord:
    id: str
    account_id: str
    status: str
    total: Optional[Decimal] = None
    currency: str = "USD"
    project_id: Optional[str] = None
    scope_proof_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    @property
    def is_draft(self) -> bool:
        return (self.status or "").lower() == INVOICE_STATUS_DRAFT


@dataclass(frozen=True)
class TranscriptEvent:
    """A project event produced from a voice memo."""
    id: str
    account_id: str
    source: str
    transcript: Optional[str] = None
    project_id: Optional[str] = None
    invoice_id: Optional[str] = None
    extracted_amount: Optional[Decimal] = None
    currency: str = "USD"
    client_name: Optional[str] = None
    client_email: Optional[str] = None

    @property
    def is_voice_log(self) -> bool:
        return (self.source or "").lower() == VOICE_EVENT_SOURCE and bool((self.transcript or "").strip())


class SourceRecordStore(ABC):
    """Lookup interface over records owned by the rest of the platform."""

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[AccountRecord]:
        ...

    @abstractmethod
    def get_receipt(self, receipt_id: str) -> Optional[ReceiptRecord]:
        ...

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    @abstractmethod
    def find_invoice_for_scope(self, scope_proof: ScopeProof) -> Optional[InvoiceRecord]:
        """Any invoice linked to the scope proof directly or through its project."""

    @abstractmethod
    def get_transcript_event(self, event_id: str) -> Optional[TranscriptEvent]:
        ...

    @abstractmethod
    def list_draft_invoices(self, created_before: datetime) -> List[InvoiceRecord]:
        ...


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _channel(value: Any) -> Channel:
    try:
        return Channel(str(value or Channel.EMAIL.value).lower())
    except ValueError:
        return Channel.EMAIL


class SqlSourceRecordStore(SourceRecordStore):
    """Reads the platform tables living in the same database as Billwatch."""

    def __init__(self, db: Optional[BillwatchDB] = None):
        self.db = db or get_db()

    def _one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            cur = conn.cursor()
            cur.execute(self.db._prepare_sql(sql), params)
            row = cur.fetchone()
        return dict(row) if row else None

    def _many(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            cur = conn.cursor()
            cur.execute(self.db._prepare_sql(sql), params)
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def get_account(self, account_id: str) -> Optional[AccountRecord]:
        row = self._one("SELECT * FROM accounts WHERE id = ?", (account_id,))
        if not row:
            return None
        return AccountRecord(
            id=row["id"],
            plan=row.get("plan"),
            name=row.get("name"),
            email=row.get("email"),
            phone=row.get("phone"),
            slack_channel=row.get("slack_channel"),
            preferred_channel=_channel(row.get("preferred_channel")),
        )

    def get_receipt(self, receipt_id: str) -> Optional[ReceiptRecord]:
        row = self._one("SELECT * FROM receipts WHERE id = ?", (receipt_id,))
        if not row:
            return None
        return ReceiptRecord(
            id=row["id"],
            account_id=row["account_id"],
            total=to_decimal(row.get("total")),
            currency=row.get("currency") or "USD",
            billable=_as_bool(row.get("billable")),
            invoice_id=row.get("invoice_id"),
            client_name=row.get("client_name"),
            client_email=row.get("client_email"),
        )

    @staticmethod
    def _invoice(row: Dict[str, Any]) -> InvoiceRecord:
        return InvoiceRecord(
            id=row["id"],
            account_id=row["account_id"],
            status=row.get("status") or INVOICE_STATUS_DRAFT,
            total=to_decimal(row.get("total")),
            currency=row.get("currency") or "USD",
            project_id=row.get("project_id"),
            scope_proof_id=row.get("scope_proof_id"),
            client_name=row.get("client_name"),
            client_email=row.get("client_email"),
            created_at=parse_iso(row.get("created_at")),
            sent_at=parse_iso(row.get("sent_at")),
        )

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        row = self._one("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
        return self._invoice(row) if row else None

    def find_invoice_for_scope(self, scope_proof: ScopeProof) -> Optional[InvoiceRecord]:
        if scope_proof.invoice_id:
            invoice = self.get_invoice(scope_proof.invoice_id)
            if invoice:
                return invoice
        query = "SELECT * FROM invoices WHERE account_id = ? AND (scope_proof_id = ?"
        params: List[Any] = [scope_proof.account_id, scope_proof.id]
        if scope_proof.project_id:
            query += " OR project_id = ?"
            params.append(scope_proof.project_id)
        query += ") ORDER BY created_at ASC LIMIT 1"
        row = self._one(query, tuple(params))
        return self._invoice(row) if row else None

    def get_transcript_event(self, event_id: str) -> Optional[TranscriptEvent]:
        row = self._one("SELECT * FROM project_events WHERE id = ?", (event_id,))
        if not row:
            return None
        return TranscriptEvent(
            id=row["id"],
            account_id=row["account_id"],
            source=row.get("source") or "",
            transcript=row.get("transcript"),
            project_id=row.get("project_id"),
            invoice_id=row.get("invoice_id"),
            extracted_amount=to_decimal(row.get("extracted_amount")),
            currency=row.get("currency") or "USD",
            client_name=row.get("client_name"),
            client_email=row.get("client_email"),
        )

    def list_draft_invoices(self, created_before: datetime) -> List[InvoiceRecord]:
        rows = self._many(
            "SELECT * FROM invoices WHERE status = ? AND created_at <= ? ORDER BY created_at ASC",
            (INVOICE_STATUS_DRAFT, to_iso(created_before)),
        )
        return [self._invoice(row) for row in rows]
