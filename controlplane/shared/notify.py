"""Notification fan-out."""

from collections.abc import Sequence
import logging

from controlplane.shared.interfaces import Notifier

logger = logging.getLogger(__name__)


class FanoutNotifier:
    """Logs every message, then sends it to each configured channel."""

    def __init__(self, channels: Sequence[Notifier]) -> None:
        self.channels = list(channels)

    def notify(self, message: str) -> None:
        logger.error("notification: %s", message)
        for channel in self.channels:
            channel.notify(message)
