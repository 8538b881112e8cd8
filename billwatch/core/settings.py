"""
Billwatch runtime settings.

All knobs come from the environment so the same build runs in dev (SQLite,
logging-only notifications) and production (Postgres, webhook transports).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_str(name: str) -> Optional[str]:
    raw = (os.getenv(name) or "").strip()
    return raw or None


@dataclass(frozen=True)
class Settings:
    db_path: str = "billwatch.db"
    database_url: Optional[str] = None

    # Approval workflow
    token_ttl_hours: int = 24
    reminder_after_hours: int = 12
    app_url: str = "https://app.billwatch.io"

    # Detection
    draft_invoice_hours: int = 24

    # Sweep scheduling
    approval_sweep_minutes: int = 15
    detection_sweep_minutes: int = 360
    sweep_lease_minutes: int = 10
    sweep_enabled: bool = True
    sweep_tick_seconds: int = 60

    # Collaborators
    notify_webhook_url: Optional[str] = None
    slack_bot_token: Optional[str] = None
    invoicing_webhook_url: Optional[str] = None

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(hours=self.token_ttl_hours)

    @property
    def reminder_after(self) -> timedelta:
        return timedelta(hours=self.reminder_after_hours)

    @property
    def draft_invoice_age(self) -> timedelta:
        return timedelta(hours=self.draft_invoice_hours)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("BILLWATCH_DB_PATH", "billwatch.db"),
            database_url=_env_str("DATABASE_URL"),
            token_ttl_hours=_env_int("BILLWATCH_TOKEN_TTL_HOURS", 24),
            reminder_after_hours=_env_int("BILLWATCH_REMINDER_AFTER_HOURS", 12),
            app_url=(os.getenv("BILLWATCH_APP_URL") or "https://app.billwatch.io").rstrip("/"),
            draft_invoice_hours=_env_int("BILLWATCH_DRAFT_INVOICE_HOURS", 24),
            approval_sweep_minutes=_env_int("BILLWATCH_APPROVAL_SWEEP_MINUTES", 15),
            detection_sweep_minutes=_env_int("BILLWATCH_DETECTION_SWEEP_MINUTES", 360),
            sweep_lease_minutes=_env_int("BILLWATCH_SWEEP_LEASE_MINUTES", 10),
            sweep_enabled=_env_bool("BILLWATCH_SWEEP_ENABLED", True),
            sweep_tick_seconds=_env_int("BILLWATCH_SWEEP_TICK_SEC", 60),
            notify_webhook_url=_env_str("BILLWATCH_NOTIFY_WEBHOOK_URL"),
            slack_bot_token=_env_str("SLACK_BOT_TOKEN"),
            invoicing_webhook_url=_env_str("BILLWATCH_INVOICING_WEBHOOK_URL"),
        )


def get_settings() -> Settings:
    """Read settings fresh from the environment (cheap, and test friendly)."""
    return Settings.from_env()
