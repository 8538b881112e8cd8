"""Outbound notifications for the approval workflow (email/SMS webhook, Slack)."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from billwatch.core.models import Channel
from billwatch.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"

TEMPLATE_CLIENT_REQUEST = "scope_proof.request.client"
TEMPLATE_CONTRACTOR_REQUEST = "scope_proof.request.contractor"
TEMPLATE_REMINDER = "scope_proof.reminder"
TEMPLATE_EXPIRED = "scope_proof.expired"
TEMPLATE_APPROVED = "scope_proof.approved"
TEMPLATE_DECLINED = "scope_proof.declined"

TEMPLATES: Dict[str, Dict[str, str]] = {
    TEMPLATE_CLIENT_REQUEST: {
        "subject": "Approval needed: {description}",
        "body": (
            "{contractor_name} is asking you to approve additional work: {description} "
            "(estimated {estimated_cost} {currency}). Review and respond here: {approval_url} "
            "This link expires at {expires_at}."
        ),
    },
    TEMPLATE_CONTRACTOR_REQUEST: {
        "subject": "Approval request sent",
        "body": "Your approval request for \"{description}\" was sent to {client_email}. It expires at {expires_at}.",
    },
    TEMPLATE_REMINDER: {
        "subject": "Still waiting on approval",
        "body": (
            "Your client has not yet responded to \"{description}\" ({estimated_cost} {currency}). "
            "The request expires at {expires_at}. Follow up: {status_url}"
        ),
    },
    TEMPLATE_EXPIRED: {
        "subject": "Approval request expired",
        "body": "The approval request for \"{description}\" expired without a response. {status_url}",
    },
    TEMPLATE_APPROVED: {
        "subject": "Scope approved",
        "body": "{approved_by} approved \"{description}\" ({estimated_cost} {currency}). {status_url}",
    },
    TEMPLATE_DECLINED: {
        "subject": "Scope declined",
        "body": "Your client declined \"{description}\". {status_url}",
    },
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_template(template_id: str, payload: Dict[str, Any]) -> Dict[str, str]:
    template = TEMPLATES.get(template_id)
    if template is None:
        return {"subject": template_id, "body": ""}
    values = _Blank({k: "" if v is None else v for k, v in payload.items()})
    return {
        "subject": template["subject"].format_map(values),
        "body": template["body"].format_map(values),
    }


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    channel: Channel
    recipient: Optional[str] = None
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(ABC):
    """Delivers a rendered template to one recipient. Never raises for transport errors."""

    @abstractmethod
    def send(
        self,
        channel: Channel,
        template_id: str,
        recipient: Optional[str],
        payload: Dict[str, Any],
    ) -> DispatchResult:
        ...


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Used when no transport is configured (local development)."""

    def send(self, channel, template_id, recipient, payload) -> DispatchResult:
        channel = Channel(channel)
        if not recipient:
            return DispatchResult(ok=False, channel=channel, error="missing_recipient")
        rendered = render_template(template_id, payload)
        logger.info("Notification [%s] to %s: %s", channel.value, recipient, rendered["subject"])
        return DispatchResult(ok=True, channel=channel, recipient=recipient)


class WebhookNotificationDispatcher(NotificationDispatcher):
    """
    Email and SMS go to a delivery webhook; Slack goes straight to
    chat.postMessage with the bot token.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        slack_token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 8.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.slack_token = slack_token
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, channel, template_id, recipient, payload) -> DispatchResult:
        channel = Channel(channel)
        if not recipient:
            return DispatchResult(ok=False, channel=channel, error="missing_recipient")
        rendered = render_template(template_id, payload)
        try:
            if channel == Channel.SLACK:
                return self._send_slack(recipient, rendered)
            return self._send_webhook(channel, template_id, recipient, rendered, payload)
        except httpx.HTTPError as exc:
            logger.warning("Notification via %s to %s failed: %s", channel.value, recipient, exc)
            return DispatchResult(ok=False, channel=channel, recipient=recipient, error=str(exc))

    def _send_slack(self, slack_channel: str, rendered: Dict[str, str]) -> DispatchResult:
        if not self.slack_token:
            return DispatchResult(ok=False, channel=Channel.SLACK, recipient=slack_channel, error="slack_not_configured")
        response = self.client.post(
            SLACK_POST_MESSAGE_URL,
            headers={"Authorization": f"Bearer {self.slack_token}"},
            json={
                "channel": slack_channel,
                "text": rendered["subject"],
                "blocks": [
                    {"type": "section", "text": {"type": "mrkdwn", "text": f"*{rendered['subject']}*\n{rendered['body']}"}},
                ],
            },
        )
        response.raise_for_status()
        body = response.json()
        if not body.get("ok"):
            error = body.get("error") or "slack_error"
            logger.warning("Slack notification to %s rejected: %s", slack_channel, error)
            return DispatchResult(ok=False, channel=Channel.SLACK, recipient=slack_channel, error=error)
        return DispatchResult(ok=True, channel=Channel.SLACK, recipient=slack_channel, meta={"ts": body.get("ts")})

    def _send_webhook(
        self,
        channel: Channel,
        template_id: str,
        recipient: str,
        rendered: Dict[str, str],
        payload: Dict[str, Any],
    ) -> DispatchResult:
        if not self.webhook_url:
            return DispatchResult(ok=False, channel=channel, recipient=recipient, error="webhook_not_configured")
        response = self.client.post(
            self.webhook_url,
            json={
                "channel": channel.value,
                "template_id": template_id,
                "recipient": recipient,
                "subject": rendered["subject"],
                "body": rendered["body"],
                "payload": {k: str(v) if v is not None else None for k, v in payload.items()},
            },
        )
        response.raise_for_status()
        return DispatchResult(ok=True, channel=channel, recipient=recipient)


def get_notification_dispatcher(settings: Optional[Settings] = None) -> NotificationDispatcher:
    settings = settings or get_settings()
    if settings.notify_webhook_url or settings.slack_bot_token:
        return WebhookNotificationDispatcher(
            webhook_url=settings.notify_webhook_url,
            slack_token=settings.slack_bot_token,
        )
    return LoggingNotificationDispatcher()
