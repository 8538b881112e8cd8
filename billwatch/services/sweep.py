"""
Reconciliation sweep.

Four passes, each on its own interval:

- reminder: nudge the contractor about approvals sitting unanswered
- expiry: expire lapsed approvals and make sure the expiry notice went out
- draft_invoice: flag invoices left in draft past the threshold
- alert_recheck: close open alerts whose condition quietly went away

Whether a pass is due lives in the ``sweep_runs`` table, not in memory. A
pass is claimed with a lease before it runs, so overlapping schedulers and
restarts neither skip nor double-run it. Inside a pass every action is
guarded by its own conditional write, and a failing record is logged and
skipped.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional

from billwatch.core.database import BillwatchDB, PageKey, get_db
from billwatch.core.models import NotificationType, to_iso, utcnow
from billwatch.core.settings import Settings, get_settings
from billwatch.integrations.source_records import SourceRecordStore
from billwatch.services.detection import AlertEngine
from billwatch.services.entitlements import EntitlementService
from billwatch.services.logging import log_error
from billwatch.services.scope_proofs import ScopeProofService, get_scope_proof_service

logger = logging.getLogger(__name__)

PASS_REMINDER = "reminder"
PASS_EXPIRY = "expiry"
PASS_DRAFT_INVOICE = "draft_invoice"
PASS_ALERT_RECHECK = "alert_recheck"


def _by_requested_at(proof) -> PageKey:
    return to_iso(proof.requested_at), proof.id


def _by_expiry(proof) -> PageKey:
    return to_iso(proof.token_expires_at), proof.id


def _by_created_at(alert) -> PageKey:
    return to_iso(alert.created_at), alert.id


@dataclass(frozen=True)
class SweepPass:
    name: str
    interval: timedelta
    handler: str


class ReconciliationSweep:
    # Rows fetched per query; a pass keeps paging until a short page.
    page_size = 500

    def __init__(
        self,
        db: BillwatchDB,
        scope_proofs: ScopeProofService,
        alert_engine: AlertEngine,
        source_records: SourceRecordStore,
        entitlements: EntitlementService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.scope_proofs = scope_proofs
        self.alert_engine = alert_engine
        self.source_records = source_records
        self.entitlements = entitlements
        self.settings = settings or get_settings()
        self.clock = clock

    def passes(self) -> List[SweepPass]:
        approval_every = timedelta(minutes=self.settings.approval_sweep_minutes)
        detection_every = timedelta(minutes=self.settings.detection_sweep_minutes)
        return [
            SweepPass(PASS_REMINDER, approval_every, "run_reminder_pass"),
            SweepPass(PASS_EXPIRY, approval_every, "run_expiry_pass"),
            SweepPass(PASS_DRAFT_INVOICE, detection_every, "run_draft_invoice_pass"),
            SweepPass(PASS_ALERT_RECHECK, detection_every, "run_alert_recheck_pass"),
        ]

    def run(self, force: bool = False) -> Dict[str, Any]:
        """Run every due pass. ``force`` ignores intervals but still honours leases."""
        lease = timedelta(minutes=self.settings.sweep_lease_minutes)
        results: Dict[str, Any] = {}
        for sweep_pass in self.passes():
            now = self.clock()
            if not self.db.claim_sweep_pass(
                sweep_pass.name,
                now,
                None if force else sweep_pass.interval,
                lease,
            ):
                results[sweep_pass.name] = {"status": "skipped"}
                continue
            try:
                summary = getattr(self, sweep_pass.handler)()
            except Exception as exc:
                self.db.fail_sweep_pass(sweep_pass.name, str(exc))
                log_error(
                    "sweep_pass_failed",
                    f"Sweep pass {sweep_pass.name} failed",
                    context={"pass": sweep_pass.name},
                    exception=exc,
                )
                results[sweep_pass.name] = {"status": "failed", "error": str(exc)}
                continue
            self.db.finish_sweep_pass(sweep_pass.name, self.clock(), summary)
            results[sweep_pass.name] = {"status": "completed", **summary}
            logger.info("Sweep pass %s completed: %s", sweep_pass.name, summary)
        return results

    def _record_failure(self, sweep_pass: str, record_id: str, exc: Exception) -> None:
        log_error(
            "sweep_record_failed",
            f"Sweep pass {sweep_pass} failed on {record_id}",
            context={"pass": sweep_pass, "record_id": record_id},
            exception=exc,
        )

    def _pages(self, fetch: Callable[..., List[Any]], sort_key: Callable[[Any], PageKey]) -> Iterator[Any]:
        """Yield every row of a keyset-paged query, ``page_size`` rows at a time."""
        after: Optional[PageKey] = None
        while True:
            page = fetch(after=after, limit=self.page_size)
            yield from page
            if len(page) < self.page_size:
                return
            after = sort_key(page[-1])

    def run_reminder_pass(self) -> Dict[str, int]:
        now = self.clock()
        due = self._pages(
            partial(self.db.list_scope_proofs_due_for_reminder, now - self.settings.reminder_after, now),
            _by_requested_at,
        )
        candidates = sent = failed = 0
        for proof in due:
            candidates += 1
            try:
                if self.scope_proofs.notify_contractor(proof, NotificationType.REMINDER):
                    sent += 1
            except Exception as exc:
                failed += 1
                self._record_failure(PASS_REMINDER, proof.id, exc)
        return {"candidates": candidates, "sent": sent, "failed": failed}

    def run_expiry_pass(self) -> Dict[str, int]:
        now = self.clock()
        expired = notified = failed = 0
        for proof in self._pages(partial(self.db.list_expirable_scope_proofs, now), _by_expiry):
            try:
                if self.scope_proofs.expire(proof.id):
                    expired += 1
            except Exception as exc:
                failed += 1
                self._record_failure(PASS_EXPIRY, proof.id, exc)
        # Picks up proofs whose notice was lost after the transition committed.
        for proof in self._pages(self.db.list_expired_without_notice, _by_expiry):
            try:
                if self.scope_proofs.notify_contractor(proof, NotificationType.EXPIRY):
                    notified += 1
            except Exception as exc:
                failed += 1
                self._record_failure(PASS_EXPIRY, proof.id, exc)
        return {"expired": expired, "notified": notified, "failed": failed}

    def run_draft_invoice_pass(self) -> Dict[str, int]:
        cutoff = self.clock() - self.settings.draft_invoice_age
        invoices = self.source_records.list_draft_invoices(cutoff)
        checked = ineligible = failed = 0
        for invoice in invoices:
            try:
                if not self.entitlements.is_eligible(invoice.account_id):
                    ineligible += 1
                    continue
                self.alert_engine.detect_draft_invoice(invoice.account_id, invoice.id)
                checked += 1
            except Exception as exc:
                failed += 1
                self._record_failure(PASS_DRAFT_INVOICE, invoice.id, exc)
        return {"candidates": len(invoices), "checked": checked, "ineligible": ineligible, "failed": failed}

    def run_alert_recheck_pass(self) -> Dict[str, int]:
        checked = failed = 0
        for alert in self._pages(self.db.list_all_open_alerts, _by_created_at):
            checked += 1
            try:
                self.alert_engine.recheck_alert(alert, trigger="sweep.alert_recheck")
            except Exception as exc:
                failed += 1
                self._record_failure(PASS_ALERT_RECHECK, alert.id, exc)
        return {"checked": checked, "failed": failed}


def get_sweep(settings: Optional[Settings] = None) -> ReconciliationSweep:
    settings = settings or get_settings()
    scope_proofs = get_scope_proof_service(settings)
    return ReconciliationSweep(
        db=get_db(),
        scope_proofs=scope_proofs,
        alert_engine=scope_proofs.alert_engine,
        source_records=scope_proofs.source_records,
        entitlements=scope_proofs.alert_engine.entitlements,
        settings=settings,
    )


def run_sweep() -> Dict[str, Any]:
    """Entry point for schedulers: run every pass that is due."""
    return get_sweep().run()


class SweepRunner:
    """Background task that calls ``run_sweep`` while the API is up."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.enabled = settings.sweep_enabled
        self.tick_seconds = settings.sweep_tick_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._status: Dict[str, Any] = {"state": "idle"}

    def get_status(self) -> Dict[str, Any]:
        return self._status

    async def start(self) -> None:
        if not self.enabled:
            self._status = {"state": "disabled"}
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._status = {"state": "running"}
        logger.info("Sweep runner started (tick %ss)", self.tick_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
        self._status = {"state": "stopped"}
        logger.info("Sweep runner stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self._tick()
            except Exception as exc:
                logger.exception("Sweep runner loop error: %s", exc)
                self._status = {"state": "error", "error": str(exc)}
            await asyncio.sleep(self.tick_seconds)

    async def _tick(self) -> None:
        results = await asyncio.to_thread(run_sweep)
        failed = [name for name, result in results.items() if result.get("status") == "failed"]
        self._status = {
            "state": "degraded" if failed else "idle",
            "failed_passes": failed,
            "last_run": to_iso(utcnow()),
        }


_RUNNER: Optional[SweepRunner] = None


def get_sweep_runner() -> SweepRunner:
    global _RUNNER
    if _RUNNER is None:
        _RUNNER = SweepRunner()
    return _RUNNER
