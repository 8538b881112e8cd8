"""
Billwatch Core Data Models

Alerts (suspected unbilled work), their audit events, and scope proofs
(client approval requests for out-of-scope work). Every surface reads and
writes through these types; rows from the database are turned into them via
``from_row``.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


MAX_SCOPE_PROOF_PHOTOS = 5


class AlertKind(str, Enum):
    """Kinds of unbilled work the detection rules can flag."""
    UNBILLED_RECEIPT = "UnbilledReceipt"
    APPROVED_SCOPE_NO_INVOICE = "ApprovedScopeNoInvoice"
    VOICE_LOG_NO_INVOICE = "VoiceLogNoInvoice"
    INVOICE_NOT_SENT = "InvoiceNotSent"


class AlertStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"


class SourceKind(str, Enum):
    """Type of platform record an alert points at."""
    RECEIPT = "receipt"
    SCOPE = "scope"
    TRANSCRIPT = "transcript"
    INVOICE = "invoice"


class AlertAction(str, Enum):
    CREATED = "CREATED"
    CLOSED = "CLOSED"


class BusinessEventType(str, Enum):
    """Signals that a source record's billing-relevant state may have changed."""
    RECEIPT_CREATED = "RECEIPT_CREATED"
    RECEIPT_UPDATED = "RECEIPT_UPDATED"
    SCOPE_APPROVED = "SCOPE_APPROVED"
    TRANSCRIPT_EXTRACTED = "TRANSCRIPT_EXTRACTED"
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_SENT = "INVOICE_SENT"


class ScopeProofStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    EXPIRED = "expired"


TERMINAL_SCOPE_PROOF_STATES = {ScopeProofStatus.APPROVED, ScopeProofStatus.EXPIRED}


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    DECLINE = "decline"


class NotificationType(str, Enum):
    INITIAL = "initial"
    REMINDER = "reminder"
    EXPIRY = "expiry"
    CONFIRMATION = "confirmation"
    DECLINED = "declined"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamps so stored values compare lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class Alert:
    """A flagged instance of suspected unbilled work."""
    id: str
    account_id: str
    kind: AlertKind
    status: AlertStatus
    source_kind: SourceKind
    source_id: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    estimated_amount: Optional[Decimal] = None
    currency: str = "USD"
    confidence: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Alert":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            kind=AlertKind(row["kind"]),
            status=AlertStatus(row["status"]),
            source_kind=SourceKind(row["source_kind"]),
            source_id=row["source_id"],
            client_name=row.get("client_name"),
            client_email=row.get("client_email"),
            estimated_amount=to_decimal(row.get("estimated_amount")),
            currency=row.get("currency") or "USD",
            confidence=int(row.get("confidence") or 0),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
            closed_at=parse_iso(row.get("closed_at")),
            close_reason=row.get("close_reason"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "source_kind": self.source_kind.value,
            "source_id": self.source_id,
            "client_name": self.client_name,
            "client_email": self.client_email,
            "estimated_amount": str(self.estimated_amount) if self.estimated_amount is not None else None,
            "currency": self.currency,
            "confidence": self.confidence,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "closed_at": to_iso(self.closed_at),
            "close_reason": self.close_reason,
        }


@dataclass(frozen=True)
class AlertEvent:
    """Immutable audit entry appended on every alert mutation."""
    id: str
    alert_id: str
    account_id: str
    action: AlertAction
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AlertEvent":
        return cls(
            id=row["id"],
            alert_id=row["alert_id"],
            account_id=row["account_id"],
            action=AlertAction(row["action"]),
            metadata=_load_json(row.get("metadata"), {}),
            created_at=parse_iso(row.get("created_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "account_id": self.account_id,
            "action": self.action.value,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at),
        }


@dataclass(frozen=True)
class AlertSummary:
    count: int
    total_estimated_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_estimated_amount": str(self.total_estimated_amount),
        }


@dataclass
class ScopeProof:
    """A request for client sign-off on out-of-scope work."""
    id: str
    account_id: str
    description: str
    estimated_cost: Decimal
    status: ScopeProofStatus = ScopeProofStatus.DRAFT
    project_id: Optional[str] = None
    invoice_id: Optional[str] = None
    currency: str = "USD"
    photos: List[str] = field(default_factory=list)
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    token_used_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    decision: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SCOPE_PROOF_STATES

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScopeProof":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            description=row["description"],
            estimated_cost=to_decimal(row.get("estimated_cost")) or Decimal("0"),
            status=ScopeProofStatus(row["status"]),
            project_id=row.get("project_id"),
            invoice_id=row.get("invoice_id"),
            currency=row.get("currency") or "USD",
            photos=list(_load_json(row.get("photos"), [])),
            client_name=row.get("client_name"),
            client_email=row.get("client_email"),
            token_expires_at=parse_iso(row.get("token_expires_at")),
            token_used_at=parse_iso(row.get("token_used_at")),
            requested_at=parse_iso(row.get("requested_at")),
            approved_at=parse_iso(row.get("approved_at")),
            approved_by=row.get("approved_by"),
            decision=row.get("decision"),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        # The approval token never leaves the service except from request_approval.
        return {
            "id": self.id,
            "account_id": self.account_id,
            "project_id": self.project_id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "estimated_cost": str(self.estimated_cost),
            "currency": self.currency,
            "photos": list(self.photos),
            "client_name": self.client_name,
            "client_email": self.client_email,
            "status": self.status.value,
            "token_expires_at": to_iso(self.token_expires_at),
            "token_used_at": to_iso(self.token_used_at),
            "requested_at": to_iso(self.requested_at),
            "approved_at": to_iso(self.approved_at),
            "approved_by": self.approved_by,
            "decision": self.decision,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class ApprovalGrant:
    """What the contractor gets back from request_approval."""
    scope_proof_id: str
    token: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_proof_id": self.scope_proof_id,
            "token": self.token,
            "expires_at": to_iso(self.expires_at),
        }


@dataclass(frozen=True)
class ScopeProofNotification:
    scope_proof_id: str
    notification_type: NotificationType
    channel: Channel
    sent_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScopeProofNotification":
        return cls(
            scope_proof_id=row["scope_proof_id"],
            notification_type=NotificationType(row["notification_type"]),
            channel=Channel(row["channel"]),
            sent_at=parse_iso(row.get("sent_at")),
        )
