"""Webhook notifier for daemon events.

Sends short notifications to a Slack-compatible incoming webhook and/or
a generic JSON webhook. All webhook failures are logged but not raised,
so a broken notification channel never blocks the daemon.
"""

import logging
from dataclasses import dataclass
from typing import Literal

import httpx

logger = logging.getLogger(__name__)

Level = Literal["info", "success", "warn", "error"]

EMOJI: dict[str, str] = {
    "info": "🔔",
    "success": "✅",
    "warn": "⚠️",
    "error": "❌",
}

# Slack truncates long messages; keep log excerpts well below that
MAX_MESSAGE_LENGTH = 3000
TRUNCATION_SUFFIX = "... [truncated]"

REQUEST_TIMEOUT = 5.0


@dataclass
class Notification:
    """A notification ready to be delivered."""

    title: str
    message: str
    level: Level = "info"

    def slack_payload(self) -> dict:
        return {"text": f"{EMOJI[self.level]} *{self.title}*\n{self.message}"}

    def webhook_payload(self) -> dict:
        return {"title": self.title, "message": self.message, "level": self.level}


async def post_webhook(url: str, payload: dict) -> bool:
    """POST a JSON payload to a webhook.

    Uses a short timeout. Network errors, timeouts and HTTP error
    statuses are logged as warnings.

    Returns:
        True if the webhook accepted the payload
    """
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            response = await client.post(url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"Webhook returned {response.status_code}: {response.text}"
                )
                return False
            return True
    except httpx.TimeoutException:
        logger.warning("Webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to webhook")
    except Exception as e:
        logger.warning(f"Webhook error: {e}")
    return False


class Notifier:
    """Delivers notifications to the configured webhooks."""

    def __init__(
        self, slack_webhook: str | None = None, webhook_url: str | None = None
    ) -> None:
        self.slack_webhook = slack_webhook
        self.webhook_url = webhook_url

    @property
    def enabled(self) -> bool:
        return bool(self.slack_webhook or self.webhook_url)

    async def send(self, notification: Notification) -> None:
        if self.slack_webhook:
            await post_webhook(self.slack_webhook, notification.slack_payload())
        if self.webhook_url:
            await post_webhook(self.webhook_url, notification.webhook_payload())


def _truncate_text(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut text to max_length, keeping room for a truncation marker."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_duration(seconds: float) -> str:
    """Format a duration as "45s", "2m 30s" or "1h 15m"."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        minutes, secs = divmod(int(seconds), 60)
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, rest = divmod(int(seconds), 3600)
    minutes = rest // 60
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def format_job_succeeded(issue_id: int, title: str, duration_s: float) -> Notification:
    return Notification(
        title=f"Pipeline complete: #{issue_id}",
        message=f"{title}\nFinished in {format_duration(duration_s)}",
        level="success",
    )


def format_job_failed(
    issue_id: int, title: str, failure_class: str, log_tail: str
) -> Notification:
    message = f"{title}\nFailure class: {failure_class}"
    if log_tail:
        message += f"\n```\n{log_tail}\n```"
    return Notification(
        title=f"Pipeline failed: #{issue_id}",
        message=_truncate_text(message),
        level="error",
    )


def format_auto_pause(reason: str) -> Notification:
    return Notification(
        title="Daemon paused",
        message=f"New dispatch is paused: {reason}",
        level="warn",
    )


def format_degradation(summary: str, cfr_pct: int, success_pct: int) -> Notification:
    return Notification(
        title="Pipeline degradation detected",
        message=f"{summary}\nCFR: {cfr_pct}% | Success: {success_pct}%",
        level="warn",
    )
