"""Hand-off of approved scope to the invoicing service."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from billwatch.core.models import ScopeProof
from billwatch.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class InvoicingHandoff(ABC):
    @abstractmethod
    def attach_approved_scope(self, scope_proof: ScopeProof) -> None:
        """Ask invoicing to add the approved work to an invoice. May raise."""


class LoggingInvoicingHandoff(InvoicingHandoff):
    def attach_approved_scope(self, scope_proof: ScopeProof) -> None:
        logger.info(
            "Approved scope %s (%s %s) ready for invoicing",
            scope_proof.id,
            scope_proof.estimated_cost,
            scope_proof.currency,
        )


class WebhookInvoicingHandoff(InvoicingHandoff):
    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 8.0):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def attach_approved_scope(self, scope_proof: ScopeProof) -> None:
        response = self.client.post(
            self.url,
            json={"event": "scope_proof.approved", "scope_proof": scope_proof.to_dict()},
        )
        response.raise_for_status()


def get_invoicing_handoff(settings: Optional[Settings] = None) -> InvoicingHandoff:
    settings = settings or get_settings()
    if settings.invoicing_webhook_url:
        return WebhookInvoicingHandoff(settings.invoicing_webhook_url)
    return LoggingInvoicingHandoff()
