from billwatch.models.base import BWBaseModel
from billwatch.models.requests import (
    BusinessEventRequest,
    CreateScopeProofRequest,
    RequestApprovalBody,
    ResolveAlertRequest,
    ResolveApprovalBody,
)

__all__ = [
    "BWBaseModel",
    "BusinessEventRequest",
    "CreateScopeProofRequest",
    "RequestApprovalBody",
    "ResolveAlertRequest",
    "ResolveApprovalBody",
]
