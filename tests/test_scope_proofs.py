from datetime import timedelta
from decimal import Decimal

import pytest

from billwatch.core.models import (
    AlertKind,
    ApprovalDecision,
    NotificationType,
    ScopeProofStatus,
)
from billwatch.services import notifications as templates
from billwatch.services.errors import (
    InvalidApprovalState,
    ScopeProofNotFound,
    ScopeProofValidationError,
)
from billwatch.services.scope_proofs import assert_valid_transition
from billwatch.services.tokens import hash_token
from tests.conftest import PAID_ACCOUNT, T0


def _draft(scope_service, **overrides):
    fields = {
        "account_id": PAID_ACCOUNT,
        "description": "Move bathroom outlet 18 inches left",
        "estimated_cost": "240.00",
        "project_id": "proj-1",
        "client_name": "Dana Client",
        "client_email": "dana@client.test",
        "photos": ["photos/wall-before.jpg"],
    }
    fields.update(overrides)
    return scope_service.create_scope_proof(**fields)


def _stored_row(db, scope_proof_id):
    with db.connect() as conn:
        row = conn.execute("SELECT * FROM scope_proofs WHERE id = ?", (scope_proof_id,)).fetchone()
    return dict(row)


def test_create_scope_proof_starts_as_draft(scope_service):
    proof = _draft(scope_service)
    assert proof.status == ScopeProofStatus.DRAFT
    assert proof.estimated_cost == Decimal("240.00")
    assert proof.photos == ["photos/wall-before.jpg"]
    assert proof.token_expires_at is None
    assert scope_service.get_scope_proof(proof.id).description == "Move bathroom outlet 18 inches left"


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"description": "   "}, "description"),
        ({"estimated_cost": "-5"}, "estimated_cost"),
        ({"estimated_cost": "a lot"}, "estimated_cost"),
        ({"photos": [f"p{i}.jpg" for i in range(6)]}, "photos"),
    ],
)
def test_create_scope_proof_validation(scope_service, overrides, field):
    with pytest.raises(ScopeProofValidationError) as exc:
        _draft(scope_service, **overrides)
    assert exc.value.context["field"] == field


def test_list_scope_proofs_filters(scope_service):
    first = _draft(scope_service)
    _draft(scope_service, project_id="proj-2")
    scope_service.request_approval(first.id)

    assert len(scope_service.list_scope_proofs(PAID_ACCOUNT)) == 2
    pending = scope_service.list_scope_proofs(PAID_ACCOUNT, status=ScopeProofStatus.PENDING)
    assert [p.id for p in pending] == [first.id]
    assert len(scope_service.list_scope_proofs(PAID_ACCOUNT, project_id="proj-2")) == 1


def test_only_drafts_can_be_deleted(scope_service):
    draft = _draft(scope_service)
    scope_service.delete_scope_proof(draft.id)
    with pytest.raises(ScopeProofNotFound):
        scope_service.get_scope_proof(draft.id)

    requested = _draft(scope_service)
    scope_service.request_approval(requested.id)
    with pytest.raises(InvalidApprovalState):
        scope_service.delete_scope_proof(requested.id)


def test_request_approval_mints_hashed_token(scope_service, db, dispatcher, clock):
    proof = _draft(scope_service)

    grant = scope_service.request_approval(proof.id)

    assert grant.scope_proof_id == proof.id
    assert grant.expires_at == T0 + timedelta(hours=24)
    stored = scope_service.get_scope_proof(proof.id)
    assert stored.status == ScopeProofStatus.PENDING
    assert stored.requested_at == T0
    assert stored.token_expires_at == T0 + timedelta(hours=24)

    row = _stored_row(db, proof.id)
    assert row["approval_token_hash"] == hash_token(grant.token)
    assert grant.token not in row.values()
    assert "token" not in stored.to_dict()

    assert dispatcher.templates() == [templates.TEMPLATE_CLIENT_REQUEST, templates.TEMPLATE_CONTRACTOR_REQUEST]
    client_message = dispatcher.sent[0]
    assert client_message.recipient == "dana@client.test"
    assert client_message.payload["approval_url"] == f"https://app.test/approve/{grant.token}"
    assert dispatcher.sent[1].recipient == "owner@rivera.test"
    assert [n.notification_type for n in db.list_notifications(proof.id)] == [NotificationType.INITIAL]


def test_request_approval_uses_explicit_client_email(scope_service, dispatcher):
    proof = _draft(scope_service, client_email=None)
    with pytest.raises(ScopeProofValidationError):
        scope_service.request_approval(proof.id)

    scope_service.request_approval(proof.id, client_email="new@client.test")
    assert scope_service.get_scope_proof(proof.id).client_email == "new@client.test"
    assert dispatcher.sent[0].recipient == "new@client.test"


def test_request_approval_twice_is_rejected(scope_service):
    proof = _draft(scope_service)
    scope_service.request_approval(proof.id)
    with pytest.raises(InvalidApprovalState):
        scope_service.request_approval(proof.id)


def test_request_approval_propagates_store_failure_without_side_effects(scope_service, source_records, dispatcher):
    proof = _draft(scope_service)
    source_records.broken = True

    with pytest.raises(ConnectionError):
        scope_service.request_approval(proof.id)

    assert scope_service.get_scope_proof(proof.id).status == ScopeProofStatus.DRAFT
    assert dispatcher.sent == []


def test_failed_client_delivery_releases_initial_claim(scope_service, db, dispatcher):
    dispatcher.fail_templates.add(templates.TEMPLATE_CLIENT_REQUEST)
    proof = _draft(scope_service)

    grant = scope_service.request_approval(proof.id)

    assert grant.token
    assert scope_service.get_scope_proof(proof.id).status == ScopeProofStatus.PENDING
    assert db.list_notifications(proof.id) == []


def test_crashing_client_delivery_releases_initial_claim(scope_service, db, dispatcher):
    dispatcher.raise_templates.add(templates.TEMPLATE_CLIENT_REQUEST)
    proof = _draft(scope_service)

    grant = scope_service.request_approval(proof.id)

    assert grant.token
    assert scope_service.get_scope_proof(proof.id).status == ScopeProofStatus.PENDING
    assert db.list_notifications(proof.id) == []
    # The claim is free again, so a later send can take it.
    assert db.claim_notification(proof.id, NotificationType.INITIAL, "email", T0)


def test_token_is_single_use(scope_service, invoicing, dispatcher):
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)

    approved = scope_service.resolve_approval(grant.token, ApprovalDecision.APPROVE, approved_by="Dana Client")
    assert approved.status == ScopeProofStatus.APPROVED
    assert approved.approved_at == T0
    assert approved.approved_by == "Dana Client"
    assert approved.decision == "approved"
    assert approved.token_used_at == T0

    with pytest.raises(InvalidApprovalState) as exc:
        scope_service.resolve_approval(grant.token, ApprovalDecision.APPROVE)
    assert "already been used" in exc.value.detail

    assert invoicing.attached == [proof.id]
    assert dispatcher.templates().count(templates.TEMPLATE_APPROVED) == 1


def test_approved_by_defaults_to_client_email(scope_service):
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)
    approved = scope_service.resolve_approval(grant.token, "approve")
    assert approved.approved_by == "dana@client.test"


def test_approval_flags_scope_until_invoiced(scope_service, engine):
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)
    scope_service.resolve_approval(grant.token, "approve")

    alerts = engine.list_open_alerts(PAID_ACCOUNT)
    assert [(a.kind, a.source_id) for a in alerts] == [(AlertKind.APPROVED_SCOPE_NO_INVOICE, proof.id)]
    assert alerts[0].estimated_amount == Decimal("240.00")


def test_invoicing_failure_does_not_undo_approval(scope_service, invoicing, engine):
    invoicing.fail = True
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)

    approved = scope_service.resolve_approval(grant.token, "approve")

    assert approved.status == ScopeProofStatus.APPROVED
    assert len(engine.list_open_alerts(PAID_ACCOUNT)) == 1


def test_decline_consumes_token_and_expires(scope_service, dispatcher, invoicing):
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)

    declined = scope_service.resolve_approval(grant.token, ApprovalDecision.DECLINE)

    assert declined.status == ScopeProofStatus.EXPIRED
    assert declined.decision == "declined"
    assert declined.approved_at is None
    assert declined.approved_by is None
    assert templates.TEMPLATE_DECLINED in dispatcher.templates()
    assert invoicing.attached == []
    with pytest.raises(InvalidApprovalState):
        scope_service.resolve_approval(grant.token, ApprovalDecision.APPROVE)


def test_expired_token_is_rejected_without_side_effects(scope_service, clock, invoicing):
    proof = _draft(scope_service)
    grant = scope_service.request_approval(proof.id)

    clock.advance(hours=24)
    with pytest.raises(InvalidApprovalState) as exc:
        scope_service.resolve_approval(grant.token, "approve")

    assert "expired" in exc.value.detail
    stored = scope_service.get_scope_proof(proof.id)
    assert stored.status == ScopeProofStatus.PENDING
    assert stored.token_used_at is None
    assert invoicing.attached == []


def test_unknown_token_and_bad_decision(scope_service):
    with pytest.raises(InvalidApprovalState):
        scope_service.resolve_approval("not-a-real-token", "approve")
    with pytest.raises(ScopeProofValidationError):
        scope_service.resolve_approval("not-a-real-token", "maybe")


def test_expire_requires_lapsed_token(scope_service, clock, dispatcher):
    proof = _draft(scope_service)
    scope_service.request_approval(proof.id)

    clock.advance(hours=23, minutes=59)
    assert scope_service.expire(proof.id) is False
    clock.advance(minutes=1)
    assert scope_service.expire(proof.id) is True
    assert scope_service.expire(proof.id) is False

    assert scope_service.get_scope_proof(proof.id).status == ScopeProofStatus.EXPIRED
    assert dispatcher.templates().count(templates.TEMPLATE_EXPIRED) == 1


def test_terminal_states_never_move(scope_service, clock):
    approved = _draft(scope_service)
    grant = scope_service.request_approval(approved.id)
    scope_service.resolve_approval(grant.token, "approve")

    clock.advance(hours=48)
    assert scope_service.expire(approved.id) is False
    assert scope_service.get_scope_proof(approved.id).status == ScopeProofStatus.APPROVED
    with pytest.raises(InvalidApprovalState):
        scope_service.request_approval(approved.id)

    expired = _draft(scope_service)
    scope_service.request_approval(expired.id)
    clock.advance(hours=25)
    scope_service.expire(expired.id)
    with pytest.raises(InvalidApprovalState):
        scope_service.request_approval(expired.id)
    assert scope_service.get_scope_proof(expired.id).status == ScopeProofStatus.EXPIRED


def test_transition_table():
    assert_valid_transition(ScopeProofStatus.DRAFT, ScopeProofStatus.PENDING)
    assert_valid_transition(ScopeProofStatus.PENDING, ScopeProofStatus.EXPIRED)
    for terminal in (ScopeProofStatus.APPROVED, ScopeProofStatus.EXPIRED):
        for target in ScopeProofStatus:
            with pytest.raises(InvalidApprovalState):
                assert_valid_transition(terminal, target)
    with pytest.raises(InvalidApprovalState):
        assert_valid_transition(ScopeProofStatus.DRAFT, ScopeProofStatus.APPROVED)
