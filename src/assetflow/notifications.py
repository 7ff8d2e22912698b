"""Workflow and processing notifications via Slack / Teams incoming webhooks."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from assetflow.settings import settings

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fire-and-forget webhook poster.

    Every public method returns True when at least one webhook accepted the
    message. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        *,
        slack_webhook_url: Optional[str] = None,
        teams_webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.slack_webhook_url = (
            slack_webhook_url if slack_webhook_url is not None else settings.slack_webhook_url
        )
        self.teams_webhook_url = (
            teams_webhook_url if teams_webhook_url is not None else settings.teams_webhook_url
        )
        self.timeout = float(timeout or settings.notification_timeout_seconds or 5.0)
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.slack_webhook_url or self.teams_webhook_url)

    def _post(self, channel: str, url: str, payload: dict) -> bool:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("%s notification failed: %s", channel, exc)
            return False
        if response.status_code >= 400:
            logger.warning(
                "%s notification rejected: status=%s body=%s",
                channel,
                response.status_code,
                response.text[:500],
            )
            return False
        return True

    def send(self, title: str, text: str) -> bool:
        if not self.enabled:
            logger.debug("Notifications disabled, dropping: %s", title)
            return False
        delivered = False
        if self.slack_webhook_url:
            delivered = self._post("Slack", self.slack_webhook_url, {"text": f"*{title}*\n{text}"}) or delivered
        if self.teams_webhook_url:
            teams_payload = {
                "@type": "MessageCard",
                "@context": "https://schema.org/extensions",
                "summary": title,
                "title": title,
                "text": text,
            }
            delivered = self._post("Teams", self.teams_webhook_url, teams_payload) or delivered
        return delivered

    def workflow_advanced(self, asset_title: str, step_name: str, actor_name: Optional[str] = None) -> bool:
        by = f" by {actor_name}" if actor_name else ""
        return self.send("Workflow advanced", f"{asset_title} moved to {step_name}{by}.")

    def workflow_completed(self, asset_title: str, actor_name: Optional[str] = None) -> bool:
        by = f" by {actor_name}" if actor_name else ""
        return self.send("Workflow completed", f"{asset_title} was approved{by}.")

    def workflow_rejected(
        self,
        asset_title: str,
        step_name: str,
        reason: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> bool:
        by = f" by {actor_name}" if actor_name else ""
        because = f": {reason}" if reason else ""
        return self.send("Workflow rejected", f"{asset_title} was rejected at {step_name}{by}{because}")

    def processing_failed(self, asset_title: str, stage: str, error: Optional[str]) -> bool:
        return self.send(
            "Processing failed",
            f"{stage} failed for {asset_title} after all retries: {error or 'unknown error'}",
        )


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()
