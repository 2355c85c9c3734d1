"""Slack incoming-webhook notifier."""

import logging

import httpx

logger = logging.getLogger(__name__)


class SlackNotifier:
    def __init__(self, webhook_url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, message: str) -> None:
        """Best effort: delivery failures are logged, never raised."""
        try:
            resp = self._client.post(self.webhook_url, json={"text": message})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Slack notification failed: %s; message was: %s", e, message)
