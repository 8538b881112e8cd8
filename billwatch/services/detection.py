"""
Unbilled-work detection.

Each business event maps to exactly one rule. A rule loads the source record
and decides whether its "unbilled" precondition holds:

- holds: the entitlement gate is checked, then an open alert is inserted.
  The partial unique index on open alerts turns a racing duplicate into a
  no-op.
- does not hold (or the record is gone): any open alert of the matching kind
  is closed.

Detection never raises to the caller that emitted the event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from billwatch.core.database import BillwatchDB, get_db
from billwatch.core.models import (
    Alert,
    AlertEvent,
    AlertKind,
    AlertSummary,
    BusinessEventType,
    ScopeProofStatus,
    SourceKind,
    utcnow,
)
from billwatch.core.settings import Settings, get_settings
from billwatch.integrations.source_records import SourceRecordStore, SqlSourceRecordStore
from billwatch.services.entitlements import EntitlementService, PlanEntitlementService
from billwatch.services.errors import AlertNotFound
from billwatch.services.logging import log_alert_event, log_error

logger = logging.getLogger(__name__)

CONFIDENCE_UNBILLED_RECEIPT = 90
CONFIDENCE_APPROVED_SCOPE = 85
CONFIDENCE_VOICE_LOG = 75
CONFIDENCE_VOICE_LOG_WITH_COST = 80
CONFIDENCE_INVOICE_NOT_SENT = 80

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Finding:
    """Result of evaluating one rule against one source record."""
    kind: AlertKind
    source_kind: SourceKind
    source_id: str
    holds: bool
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class AlertEngine:
    def __init__(
        self,
        db: BillwatchDB,
        source_records: SourceRecordStore,
        entitlements: EntitlementService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.source_records = source_records
        self.entitlements = entitlements
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    def on_business_event(
        self,
        account_id: str,
        event_type: Union[BusinessEventType, str],
        source_id: str,
    ) -> None:
        try:
            event = BusinessEventType(event_type)
        except ValueError:
            logger.warning("Ignoring unknown business event %r for %s", event_type, account_id)
            return
        handler = getattr(self, EVENT_HANDLERS[event])
        try:
            handler(account_id, source_id, event)
        except Exception as exc:
            log_error(
                "detection_failed",
                f"Detection failed for {event.value} {source_id}",
                context={"account_id": account_id, "event_type": event.value, "source_id": source_id},
                exception=exc,
            )

    def _on_receipt(self, account_id: str, source_id: str, event: BusinessEventType) -> None:
        self._apply(account_id, self.evaluate_receipt(account_id, source_id), event.value)

    def _on_scope_approved(self, account_id: str, source_id: str, event: BusinessEventType) -> None:
        self._apply(account_id, self.evaluate_scope(account_id, source_id), event.value)

    def _on_transcript(self, account_id: str, source_id: str, event: BusinessEventType) -> None:
        self._apply(account_id, self.evaluate_voice_log(account_id, source_id), event.value)

    def _on_invoice_created(self, account_id: str, source_id: str, event: BusinessEventType) -> None:
        # A new invoice can absorb receipts, scope and voice logs, so every
        # open alert for the account is re-evaluated along with the invoice itself.
        self._apply(account_id, self.evaluate_invoice(account_id, source_id), event.value)
        for alert in self.db.list_open_alerts(account_id):
            if alert.kind != AlertKind.INVOICE_NOT_SENT:
                self.recheck_alert(alert, trigger=event.value)

    def _on_invoice_sent(self, account_id: str, source_id: str, event: BusinessEventType) -> None:
        self._apply(account_id, self.evaluate_invoice(account_id, source_id), event.value)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def evaluate_receipt(self, account_id: str, receipt_id: str) -> Finding:
        receipt = self.source_records.get_receipt(receipt_id)
        kind, source_kind = AlertKind.UNBILLED_RECEIPT, SourceKind.RECEIPT
        if receipt is None or receipt.account_id != account_id:
            return Finding(kind, source_kind, receipt_id, False, "source_missing")
        if not receipt.billable:
            return Finding(kind, source_kind, receipt_id, False, "not_billable")
        if receipt.invoice_id:
            return Finding(kind, source_kind, receipt_id, False, "linked_to_invoice")
        return Finding(kind, source_kind, receipt_id, True, details={
            "estimated_amount": receipt.total,
            "currency": receipt.currency,
            "client_name": receipt.client_name,
            "client_email": receipt.client_email,
            "confidence": CONFIDENCE_UNBILLED_RECEIPT,
        })

    def evaluate_scope(self, account_id: str, scope_proof_id: str) -> Finding:
        proof = self.db.get_scope_proof(scope_proof_id)
        kind, source_kind = AlertKind.APPROVED_SCOPE_NO_INVOICE, SourceKind.SCOPE
        if proof is None or proof.account_id != account_id:
            return Finding(kind, source_kind, scope_proof_id, False, "source_missing")
        if proof.status != ScopeProofStatus.APPROVED:
            return Finding(kind, source_kind, scope_proof_id, False, "not_approved")
        if self.source_records.find_invoice_for_scope(proof) is not None:
            return Finding(kind, source_kind, scope_proof_id, False, "linked_to_invoice")
        return Finding(kind, source_kind, scope_proof_id, True, details={
            "estimated_amount": proof.estimated_cost,
            "currency": proof.currency,
            "client_name": proof.client_name,
            "client_email": proof.client_email,
            "confidence": CONFIDENCE_APPROVED_SCOPE,
        })

    def evaluate_voice_log(self, account_id: str, event_id: str) -> Finding:
        event = self.source_records.get_transcript_event(event_id)
        kind, source_kind = AlertKind.VOICE_LOG_NO_INVOICE, SourceKind.TRANSCRIPT
        if event is None or event.account_id != account_id:
            return Finding(kind, source_kind, event_id, False, "source_missing")
        if not event.is_voice_log:
            return Finding(kind, source_kind, event_id, False, "not_voice_log")
        if event.invoice_id:
            return Finding(kind, source_kind, event_id, False, "linked_to_invoice")
        # Spoken content is not always billable work; structured cost data raises the bar.
        has_cost = event.extracted_amount is not None
        return Finding(kind, source_kind, event_id, True, details={
            "estimated_amount": event.extracted_amount,
            "currency": event.currency,
            "client_name": event.client_name,
            "client_email": event.client_email,
            "confidence": CONFIDENCE_VOICE_LOG_WITH_COST if has_cost else CONFIDENCE_VOICE_LOG,
        })

    def evaluate_invoice(self, account_id: str, invoice_id: str) -> Finding:
        invoice = self.source_records.get_invoice(invoice_id)
        kind, source_kind = AlertKind.INVOICE_NOT_SENT, SourceKind.INVOICE
        if invoice is None or invoice.account_id != account_id:
            return Finding(kind, source_kind, invoice_id, False, "source_missing")
        if not invoice.is_draft:
            return Finding(kind, source_kind, invoice_id, False, "invoice_sent")
        cutoff = self.clock() - self.settings.draft_invoice_age
        if invoice.created_at is None or invoice.created_at > cutoff:
            return Finding(kind, source_kind, invoice_id, False, "draft_too_recent")
        return Finding(kind, source_kind, invoice_id, True, details={
            "estimated_amount": invoice.total,
            "currency": invoice.currency,
            "client_name": invoice.client_name,
            "client_email": invoice.client_email,
            "confidence": CONFIDENCE_INVOICE_NOT_SENT,
        })

    def evaluate(self, account_id: str, kind: AlertKind, source_id: str) -> Finding:
        return getattr(self, KIND_EVALUATORS[AlertKind(kind)])(account_id, source_id)

    # ------------------------------------------------------------------
    # Applying findings
    # ------------------------------------------------------------------

    def _apply(self, account_id: str, finding: Finding, trigger: str) -> Optional[Alert]:
        if not finding.holds:
            closed = self.db.close_open_alert(
                account_id,
                finding.kind,
                finding.source_id,
                reason=finding.reason,
                metadata={"trigger": trigger},
                closed_at=self.clock(),
            )
            if closed:
                log_alert_event("CLOSED", closed, trigger, reason=finding.reason)
            else:
                logger.debug("No alert for %s %s: %s", finding.kind.value, finding.source_id, finding.reason)
            # A manual dismissal lasts only while the condition holds.
            if self.db.clear_alert_suppression(account_id, finding.kind, finding.source_id):
                logger.debug("Lifted dismissal of %s %s", finding.kind.value, finding.source_id)
            return None

        if self.db.is_alert_suppressed(account_id, finding.kind, finding.source_id):
            logger.debug("%s %s was dismissed by the contractor; not re-raising", finding.kind.value, finding.source_id)
            return None

        if not self.entitlements.is_eligible(account_id):
            logger.debug("Account %s not eligible for alerts; skipping %s", account_id, finding.kind.value)
            return None

        payload = dict(finding.details)
        payload.update({
            "account_id": account_id,
            "kind": finding.kind,
            "source_kind": finding.source_kind,
            "source_id": finding.source_id,
            "created_at": self.clock(),
        })
        created = self.db.create_alert_if_absent(
            payload,
            metadata={"trigger": trigger, "confidence": finding.details.get("confidence")},
        )
        if created is None:
            logger.debug("Open %s alert already exists for %s", finding.kind.value, finding.source_id)
            return None
        log_alert_event("CREATED", created, trigger)
        return created

    def recheck_alert(self, alert: Alert, trigger: str = "recheck") -> None:
        """Close an open alert if its precondition no longer holds."""
        finding = self.evaluate(alert.account_id, alert.kind, alert.source_id)
        if not finding.holds:
            self._apply(alert.account_id, finding, trigger)

    def detect_draft_invoice(self, account_id: str, invoice_id: str) -> None:
        """Run the InvoiceNotSent rule as if an invoice event had fired."""
        self._apply(account_id, self.evaluate_invoice(account_id, invoice_id), "sweep.draft_invoice")

    # ------------------------------------------------------------------
    # Queries and manual resolution
    # ------------------------------------------------------------------

    def list_open_alerts(self, account_id: str) -> List[Alert]:
        return self.db.list_open_alerts(account_id)

    def alert_summary(self, account_id: str) -> AlertSummary:
        alerts = self.db.list_open_alerts(account_id)
        total = sum((a.estimated_amount or Decimal("0") for a in alerts), Decimal("0"))
        return AlertSummary(count=len(alerts), total_estimated_amount=total.quantize(CENTS))

    def get_alert(self, alert_id: str) -> Alert:
        alert = self.db.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    def list_alert_events(self, alert_id: str) -> List[AlertEvent]:
        self.get_alert(alert_id)
        return self.db.list_alert_events(alert_id)

    def resolve_alert(self, alert_id: str, reason: str, note: Optional[str] = None) -> Alert:
        """Manually mark an alert fixed. Resolving an already fixed alert is a no-op.

        The dismissal sticks: the same source is not alerted on again until its
        condition has been seen false at least once.
        """
        alert = self.get_alert(alert_id)
        closed = self.db.close_alert(
            alert.id,
            reason=reason,
            metadata={"manual": True, "note": note},
            closed_at=self.clock(),
            suppress=True,
        )
        if closed is None:
            logger.debug("Alert %s already fixed", alert_id)
            return self.get_alert(alert_id)
        log_alert_event("CLOSED", closed, "manual", reason=reason)
        return closed


EVENT_HANDLERS: Dict[BusinessEventType, str] = {
    BusinessEventType.RECEIPT_CREATED: "_on_receipt",
    BusinessEventType.RECEIPT_UPDATED: "_on_receipt",
    BusinessEventType.SCOPE_APPROVED: "_on_scope_approved",
    BusinessEventType.TRANSCRIPT_EXTRACTED: "_on_transcript",
    BusinessEventType.INVOICE_CREATED: "_on_invoice_created",
    BusinessEventType.INVOICE_SENT: "_on_invoice_sent",
}

KIND_EVALUATORS: Dict[AlertKind, str] = {
    AlertKind.UNBILLED_RECEIPT: "evaluate_receipt",
    AlertKind.APPROVED_SCOPE_NO_INVOICE: "evaluate_scope",
    AlertKind.VOICE_LOG_NO_INVOICE: "evaluate_voice_log",
    AlertKind.INVOICE_NOT_SENT: "evaluate_invoice",
}


def _check_dispatch_tables() -> None:
    missing_events = set(BusinessEventType) - set(EVENT_HANDLERS)
    if missing_events:
        raise RuntimeError(f"No detection rule for events: {sorted(e.value for e in missing_events)}")
    missing_kinds = set(AlertKind) - set(KIND_EVALUATORS)
    if missing_kinds:
        raise RuntimeError(f"No evaluator for alert kinds: {sorted(k.value for k in missing_kinds)}")
    for name in list(EVENT_HANDLERS.values()) + list(KIND_EVALUATORS.values()):
        if not callable(getattr(AlertEngine, name, None)):
            raise RuntimeError(f"AlertEngine has no method {name}")


_check_dispatch_tables()


def get_alert_engine(settings: Optional[Settings] = None) -> AlertEngine:
    db = get_db()
    source_records = SqlSourceRecordStore(db)
    return AlertEngine(
        db=db,
        source_records=source_records,
        entitlements=PlanEntitlementService(source_records),
        settings=settings,
    )
