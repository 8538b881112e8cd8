"""
Scope proof approval workflow.

    draft -> pending -> approved
                     -> expired   (token lapsed, or client declined)

Every transition is a compare-and-swap on the stored status, so duplicate or
racing triggers lose cleanly instead of corrupting state. The raw approval
token is only ever returned from ``request_approval``; the store keeps its
SHA-256 digest.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from billwatch.core.database import BillwatchDB, get_db
from billwatch.core.models import (
    MAX_SCOPE_PROOF_PHOTOS,
    ApprovalDecision,
    ApprovalGrant,
    BusinessEventType,
    Channel,
    NotificationType,
    ScopeProof,
    ScopeProofStatus,
    to_decimal,
    to_iso,
    utcnow,
)
from billwatch.core.settings import Settings, get_settings
from billwatch.integrations.invoicing import InvoicingHandoff, get_invoicing_handoff
from billwatch.integrations.source_records import AccountRecord, SourceRecordStore, SqlSourceRecordStore
from billwatch.services.detection import AlertEngine, get_alert_engine
from billwatch.services.errors import InvalidApprovalState, ScopeProofNotFound, ScopeProofValidationError
from billwatch.services.logging import log_error, log_transition
from billwatch.services.notifications import (
    TEMPLATE_APPROVED,
    TEMPLATE_CLIENT_REQUEST,
    TEMPLATE_CONTRACTOR_REQUEST,
    TEMPLATE_DECLINED,
    TEMPLATE_EXPIRED,
    TEMPLATE_REMINDER,
    NotificationDispatcher,
    get_notification_dispatcher,
)
from billwatch.services.tokens import TokenGenerator, hash_token

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[ScopeProofStatus, set] = {
    ScopeProofStatus.DRAFT: {ScopeProofStatus.PENDING},
    ScopeProofStatus.PENDING: {ScopeProofStatus.APPROVED, ScopeProofStatus.EXPIRED},
    ScopeProofStatus.APPROVED: set(),
    ScopeProofStatus.EXPIRED: set(),
}

DECISION_APPROVED = "approved"
DECISION_DECLINED = "declined"

CONTRACTOR_TEMPLATES = {
    NotificationType.REMINDER: TEMPLATE_REMINDER,
    NotificationType.EXPIRY: TEMPLATE_EXPIRED,
    NotificationType.CONFIRMATION: TEMPLATE_APPROVED,
    NotificationType.DECLINED: TEMPLATE_DECLINED,
}


def assert_valid_transition(
    from_state: ScopeProofStatus,
    to_state: ScopeProofStatus,
    scope_proof_id: Optional[str] = None,
) -> None:
    if to_state not in VALID_TRANSITIONS.get(from_state, set()):
        raise InvalidApprovalState(
            f"Invalid transition: {from_state.value} -> {to_state.value}",
            scope_proof_id=scope_proof_id,
        )


class ScopeProofService:
    def __init__(
        self,
        db: BillwatchDB,
        source_records: SourceRecordStore,
        dispatcher: NotificationDispatcher,
        invoicing: InvoicingHandoff,
        alert_engine: AlertEngine,
        tokens: Optional[TokenGenerator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.source_records = source_records
        self.dispatcher = dispatcher
        self.invoicing = invoicing
        self.alert_engine = alert_engine
        self.tokens = tokens or TokenGenerator()
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_scope_proof(
        self,
        account_id: str,
        description: str,
        estimated_cost: Union[Decimal, str, int, float],
        project_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        photos: Optional[Iterable[str]] = None,
        client_name: Optional[str] = None,
        client_email: Optional[str] = None,
        currency: str = "USD",
    ) -> ScopeProof:
        description = (description or "").strip()
        if not description:
            raise ScopeProofValidationError("description", "Description is required")
        cost = to_decimal(estimated_cost)
        if cost is None or not cost.is_finite():
            raise ScopeProofValidationError("estimated_cost", "Estimated cost must be a number")
        if cost < 0:
            raise ScopeProofValidationError("estimated_cost", "Estimated cost cannot be negative")
        photo_refs = [str(p).strip() for p in (photos or [])]
        if len(photo_refs) > MAX_SCOPE_PROOF_PHOTOS:
            raise ScopeProofValidationError("photos", f"At most {MAX_SCOPE_PROOF_PHOTOS} photos are allowed")
        if any(not ref for ref in photo_refs):
            raise ScopeProofValidationError("photos", "Photo references cannot be empty")

        proof = self.db.create_scope_proof({
            "account_id": account_id,
            "project_id": project_id,
            "invoice_id": invoice_id,
            "description": description,
            "estimated_cost": cost,
            "currency": (currency or "USD").upper(),
            "photos": photo_refs,
            "client_name": client_name,
            "client_email": (client_email or "").strip() or None,
        })
        logger.info("Created scope proof %s for %s", proof.id, account_id)
        return proof

    def get_scope_proof(self, scope_proof_id: str) -> ScopeProof:
        proof = self.db.get_scope_proof(scope_proof_id)
        if proof is None:
            raise ScopeProofNotFound(scope_proof_id)
        return proof

    def list_scope_proofs(
        self,
        account_id: str,
        status: Optional[ScopeProofStatus] = None,
        project_id: Optional[str] = None,
    ) -> List[ScopeProof]:
        return self.db.list_scope_proofs(account_id, status=status, project_id=project_id)

    def delete_scope_proof(self, scope_proof_id: str) -> None:
        proof = self.get_scope_proof(scope_proof_id)
        if proof.status != ScopeProofStatus.DRAFT or not self.db.delete_draft_scope_proof(proof.id):
            raise InvalidApprovalState("Only draft scope proofs can be deleted", scope_proof_id=proof.id)
        logger.info("Deleted draft scope proof %s", proof.id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request_approval(self, scope_proof_id: str, client_email: Optional[str] = None) -> ApprovalGrant:
        """draft -> pending. Mints a token and notifies client and contractor."""
        proof = self.get_scope_proof(scope_proof_id)
        assert_valid_transition(proof.status, ScopeProofStatus.PENDING, proof.id)
        recipient = (client_email or proof.client_email or "").strip()
        if not recipient:
            raise ScopeProofValidationError("client_email", "A client email is required to request approval")

        # Looked up before the transition so a failing store leaves the draft untouched.
        account = self.source_records.get_account(proof.account_id)

        token = self.tokens.generate()
        requested_at = self.clock()
        expires_at = requested_at + self.settings.token_ttl
        if not self.db.mark_scope_proof_pending(
            proof.id,
            hash_token(token),
            requested_at=requested_at,
            expires_at=expires_at,
            client_email=recipient,
        ):
            raise InvalidApprovalState("Scope proof is no longer a draft", scope_proof_id=proof.id)

        proof = self.get_scope_proof(proof.id)
        log_transition(proof, ScopeProofStatus.DRAFT, ScopeProofStatus.PENDING, expires_at=to_iso(expires_at))
        try:
            self._send_request_notifications(proof, token, account)
        except Exception as exc:
            # The proof is already pending; the caller still needs the token.
            log_error(
                "approval_request_notify_failed",
                f"Request notifications failed for scope proof {proof.id}",
                context={"scope_proof_id": proof.id},
                exception=exc,
            )
        return ApprovalGrant(scope_proof_id=proof.id, token=token, expires_at=expires_at)

    def resolve_approval(
        self,
        token: str,
        decision: Union[ApprovalDecision, str] = ApprovalDecision.APPROVE,
        approved_by: Optional[str] = None,
    ) -> ScopeProof:
        """Spend the token on the client's decision. The token is dead afterwards either way."""
        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            raise ScopeProofValidationError("decision", "Decision must be 'approve' or 'decline'")

        token_hash = hash_token(token or "")
        now = self.clock()
        approving = decision == ApprovalDecision.APPROVE
        proof = self.db.consume_approval_token(
            token_hash,
            now,
            ScopeProofStatus.APPROVED if approving else ScopeProofStatus.EXPIRED,
            DECISION_APPROVED if approving else DECISION_DECLINED,
            approved_by=approved_by,
        )
        if proof is None:
            raise self._rejection(token_hash, now)

        if approving:
            log_transition(proof, ScopeProofStatus.PENDING, proof.status, approved_by=proof.approved_by)
            self._notify_after_commit(proof, NotificationType.CONFIRMATION)
            self._hand_off_to_invoicing(proof)
            self.alert_engine.on_business_event(proof.account_id, BusinessEventType.SCOPE_APPROVED, proof.id)
        else:
            log_transition(proof, ScopeProofStatus.PENDING, proof.status, decision=proof.decision)
            self._notify_after_commit(proof, NotificationType.DECLINED)
        return proof

    def expire(self, scope_proof_id: str) -> bool:
        """pending -> expired once the token has lapsed. False when there was nothing to do."""
        proof = self.db.get_scope_proof(scope_proof_id)
        if proof is None or proof.status != ScopeProofStatus.PENDING:
            return False
        now = self.clock()
        if proof.token_expires_at is None or now < proof.token_expires_at:
            return False
        if not self.db.expire_scope_proof(proof.id, now):
            logger.debug("Scope proof %s already moved on", proof.id)
            return False
        expired = self.get_scope_proof(proof.id)
        log_transition(expired, ScopeProofStatus.PENDING, expired.status, reason="token_lapsed")
        self._notify_after_commit(expired, NotificationType.EXPIRY)
        return True

    def _rejection(self, token_hash: str, now: datetime) -> InvalidApprovalState:
        proof = self.db.get_scope_proof_by_token_hash(token_hash)
        if proof is None:
            return InvalidApprovalState("Unknown approval token")
        if proof.token_used_at is not None:
            detail = "Approval link has already been used"
        elif proof.status != ScopeProofStatus.PENDING:
            detail = f"Scope proof is {proof.status.value}"
        elif proof.token_expires_at is not None and proof.token_expires_at <= now:
            detail = "Approval link has expired"
        else:
            detail = "Approval request changed while it was being resolved"
        return InvalidApprovalState(detail, scope_proof_id=proof.id)

    def _notify_after_commit(self, proof: ScopeProof, notification_type: NotificationType) -> None:
        try:
            self.notify_contractor(proof, notification_type)
        except Exception as exc:
            log_error(
                "scope_proof_notify_failed",
                f"{notification_type.value} notification failed for scope proof {proof.id}",
                context={"scope_proof_id": proof.id},
                exception=exc,
            )

    def _hand_off_to_invoicing(self, proof: ScopeProof) -> None:
        try:
            self.invoicing.attach_approved_scope(proof)
        except Exception as exc:
            # The SCOPE_APPROVED alert flags the proof until an invoice picks it up.
            log_error(
                "invoicing_handoff_failed",
                f"Invoicing hand-off failed for scope proof {proof.id}",
                context={"scope_proof_id": proof.id, "account_id": proof.account_id},
                exception=exc,
            )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _payload(self, proof: ScopeProof, account: Optional[AccountRecord], **extra: Any) -> Dict[str, Any]:
        payload = {
            "scope_proof_id": proof.id,
            "description": proof.description,
            "estimated_cost": proof.estimated_cost,
            "currency": proof.currency,
            "client_name": proof.client_name,
            "client_email": proof.client_email,
            "contractor_name": account.name if account else None,
            "expires_at": to_iso(proof.token_expires_at),
            "approved_by": proof.approved_by,
            "status_url": f"{self.settings.app_url}/scope-proofs/{proof.id}",
        }
        payload.update(extra)
        return payload

    def _send_request_notifications(self, proof: ScopeProof, token: str, account: Optional[AccountRecord]) -> None:
        if not self.db.claim_notification(proof.id, NotificationType.INITIAL, Channel.EMAIL.value, self.clock()):
            logger.debug("Initial notification for %s already recorded", proof.id)
            return
        payload = self._payload(proof, account, approval_url=f"{self.settings.app_url}/approve/{token}")
        try:
            result = self.dispatcher.send(Channel.EMAIL, TEMPLATE_CLIENT_REQUEST, proof.client_email, payload)
        except Exception:
            self.db.release_notification(proof.id, NotificationType.INITIAL)
            raise
        if not result.ok:
            self.db.release_notification(proof.id, NotificationType.INITIAL)
            logger.warning("Approval request for %s not delivered to client: %s", proof.id, result.error)
        if account is not None:
            channel = account.preferred_channel
            notice = self.dispatcher.send(channel, TEMPLATE_CONTRACTOR_REQUEST, account.contact_for(channel), payload)
            if not notice.ok:
                logger.warning("Request confirmation for %s not delivered to contractor: %s", proof.id, notice.error)

    def notify_contractor(self, proof: ScopeProof, notification_type: NotificationType) -> bool:
        """Send a one-off notice to the contractor, at most once per type.

        The notification row is claimed before sending and released if the send
        fails, so a later sweep can retry.
        """
        try:
            account = self.source_records.get_account(proof.account_id)
        except Exception as exc:
            log_error(
                "account_lookup_failed",
                f"Could not load account for scope proof {proof.id}",
                context={"scope_proof_id": proof.id, "notification_type": notification_type.value},
                exception=exc,
            )
            return False
        if account is None:
            logger.warning("No account %s for scope proof %s; skipping %s", proof.account_id, proof.id, notification_type.value)
            return False

        channel = account.preferred_channel
        if not self.db.claim_notification(proof.id, notification_type, channel.value, self.clock()):
            logger.debug("%s notification for %s already recorded", notification_type.value, proof.id)
            return False
        try:
            result = self.dispatcher.send(
                channel,
                CONTRACTOR_TEMPLATES[notification_type],
                account.contact_for(channel),
                self._payload(proof, account),
            )
        except Exception:
            self.db.release_notification(proof.id, notification_type)
            raise
        if not result.ok:
            self.db.release_notification(proof.id, notification_type)
            logger.warning("%s notification for %s failed: %s", notification_type.value, proof.id, result.error)
            return False
        return True


def get_scope_proof_service(settings: Optional[Settings] = None) -> ScopeProofService:
    settings = settings or get_settings()
    db = get_db()
    return ScopeProofService(
        db=db,
        source_records=SqlSourceRecordStore(db),
        dispatcher=get_notification_dispatcher(settings),
        invoicing=get_invoicing_handoff(settings),
        alert_engine=get_alert_engine(settings),
        settings=settings,
    )
