"""Request bodies for the Billwatch HTTP API."""
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from billwatch.core.models import ApprovalDecision
from billwatch.models.base import BWBaseModel


class BusinessEventRequest(BWBaseModel):
    """A source record's billing-relevant state may have changed."""
    account_id: str = Field(min_length=1)
    # Kept as a plain string: unknown event types are accepted and ignored.
    event_type: str = Field(min_length=1)
    source_id: str = Field(min_length=1)


class ResolveAlertRequest(BWBaseModel):
    reason: str = Field(default="resolved_manually", min_length=1)
    note: Optional[str] = None


class CreateScopeProofRequest(BWBaseModel):
    account_id: str = Field(min_length=1)
    description: str
    estimated_cost: Decimal
    currency: str = "USD"
    project_id: Optional[str] = None
    invoice_id: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    client_name: Optional[str] = None
    client_email: Optional[str] = None


class RequestApprovalBody(BWBaseModel):
    client_email: Optional[str] = None


class ResolveApprovalBody(BWBaseModel):
    decision: ApprovalDecision = ApprovalDecision.APPROVE
    approved_by: Optional[str] = None
