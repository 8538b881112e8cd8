"""
Scope Proof API Endpoints

Contractor routes sit behind the API key. The client approval route is
public: the approval token in the URL is the credential.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from billwatch.core.models import ScopeProofStatus
from billwatch.core.settings import get_settings
from billwatch.models.requests import CreateScopeProofRequest, RequestApprovalBody, ResolveApprovalBody
from billwatch.services.auth import verify_api_key
from billwatch.services.scope_proofs import get_scope_proof_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scope-proofs", tags=["scope-proofs"], dependencies=[Depends(verify_api_key)])
approvals_router = APIRouter(prefix="/api/scope-proofs", tags=["scope-proofs"])


@approvals_router.post("/approve/{token}")
def resolve_approval(token: str, body: Optional[ResolveApprovalBody] = None) -> Dict[str, Any]:
    body = body or ResolveApprovalBody()
    proof = get_scope_proof_service().resolve_approval(token, body.decision, body.approved_by)
    return {
        "scope_proof_id": proof.id,
        "status": proof.status.value,
        "decision": proof.decision,
        "approved_at": proof.to_dict()["approved_at"],
        "approved_by": proof.approved_by,
    }


@router.post("", status_code=201)
def create_scope_proof(body: CreateScopeProofRequest) -> Dict[str, Any]:
    proof = get_scope_proof_service().create_scope_proof(
        account_id=body.account_id,
        description=body.description,
        estimated_cost=body.estimated_cost,
        project_id=body.project_id,
        invoice_id=body.invoice_id,
        photos=body.photos,
        client_name=body.client_name,
        client_email=body.client_email,
        currency=body.currency,
    )
    return {"scope_proof": proof.to_dict()}


@router.get("")
def list_scope_proofs(
    account_id: str = Query(..., min_length=1),
    status: Optional[ScopeProofStatus] = Query(None),
    project_id: Optional[str] = Query(None),
) -> Dict[str, Any]:
    proofs = get_scope_proof_service().list_scope_proofs(account_id, status=status, project_id=project_id)
    return {"count": len(proofs), "scope_proofs": [p.to_dict() for p in proofs]}


@router.get("/{scope_proof_id}")
def get_scope_proof(scope_proof_id: str) -> Dict[str, Any]:
    return {"scope_proof": get_scope_proof_service().get_scope_proof(scope_proof_id).to_dict()}


@router.delete("/{scope_proof_id}")
def delete_scope_proof(scope_proof_id: str) -> Dict[str, Any]:
    get_scope_proof_service().delete_scope_proof(scope_proof_id)
    return {"deleted": True, "scope_proof_id": scope_proof_id}


@router.post("/{scope_proof_id}/request-approval")
def request_approval(scope_proof_id: str, body: Optional[RequestApprovalBody] = None) -> Dict[str, Any]:
    body = body or RequestApprovalBody()
    grant = get_scope_proof_service().request_approval(scope_proof_id, client_email=body.client_email)
    result = grant.to_dict()
    result["approval_url"] = f"{get_settings().app_url}/approve/{grant.token}"
    logger.info("Approval link issued for scope proof %s", grant.scope_proof_id)
    return result
