"""
Entitlement gate.

Only accounts on a paid plan get alerts. The plan is looked up on every call;
nothing is cached, so upgrades and downgrades take effect immediately.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from billwatch.integrations.source_records import SourceRecordStore

logger = logging.getLogger(__name__)


class PlanTier(str, Enum):
    """Subscription plans known to the platform."""
    NONE = "none"
    FREE = "free"
    SOLO = "solo"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


PAID_TIERS = {PlanTier.SOLO, PlanTier.PROFESSIONAL, PlanTier.ENTERPRISE}


def parse_plan(value: Optional[str]) -> PlanTier:
    try:
        return PlanTier(str(value or "").strip().lower())
    except ValueError:
        return PlanTier.NONE


class EntitlementService(ABC):
    @abstractmethod
    def is_eligible(self, account_id: str) -> bool:
        ...


class PlanEntitlementService(EntitlementService):
    def __init__(self, source_records: SourceRecordStore):
        self.source_records = source_records

    def is_eligible(self, account_id: str) -> bool:
        try:
            account = self.source_records.get_account(account_id)
        except Exception as exc:
            logger.warning("Plan lookup failed for %s, treating as ineligible: %s", account_id, exc)
            return False
        if account is None:
            return False
        return parse_plan(account.plan) in PAID_TIERS
