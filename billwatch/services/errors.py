"""
Billwatch Error Handling

Specific error types with user-facing messages and debugging context.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_FAILED = "VALIDATION_FAILED"

    # Lookup errors (404)
    SCOPE_PROOF_NOT_FOUND = "SCOPE_PROOF_NOT_FOUND"
    ALERT_NOT_FOUND = "ALERT_NOT_FOUND"

    # Workflow errors
    INVALID_APPROVAL_STATE = "INVALID_APPROVAL_STATE"


class BillwatchError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class InvalidApprovalState(BillwatchError):
    """Scope proof cannot move: terminal state, or bad/expired/used token."""

    def __init__(self, detail: str, scope_proof_id: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_APPROVAL_STATE,
            message="Approval request is no longer valid",
            detail=detail,
            context={"scope_proof_id": scope_proof_id} if scope_proof_id else None,
        )


class ScopeProofNotFound(BillwatchError):
    def __init__(self, scope_proof_id: str):
        super().__init__(
            code=ErrorCode.SCOPE_PROOF_NOT_FOUND,
            message=f"Scope proof '{scope_proof_id}' not found",
            context={"scope_proof_id": scope_proof_id},
        )


class AlertNotFound(BillwatchError):
    def __init__(self, alert_id: str):
        super().__init__(
            code=ErrorCode.ALERT_NOT_FOUND,
            message=f"Alert '{alert_id}' not found",
            context={"alert_id": alert_id},
        )


class ScopeProofValidationError(BillwatchError):
    """Bad input when creating a scope proof."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"Invalid value for '{field}'",
            detail=detail,
            context={"field": field},
        )


STATUS_MAP = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.SCOPE_PROOF_NOT_FOUND: 404,
    ErrorCode.ALERT_NOT_FOUND: 404,
    ErrorCode.INVALID_APPROVAL_STATE: 410,
}


def status_for(error: BillwatchError) -> int:
    return STATUS_MAP.get(error.code, 500)
