"""SNS implementation of the notification channel."""

import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client

logger = logging.getLogger(__name__)


class SnsNotifier:
    def __init__(
        self,
        region: str,
        topic_arn: str,
        subject: str = "controlplane",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        self.topic_arn = topic_arn
        self.subject = subject[:100]
        self._client = client or create_client("sns", region, timeout)

    def notify(self, message: str) -> None:
        """Best effort: a failed publish is logged, never raised."""
        try:
            self._client.publish(TopicArn=self.topic_arn, Subject=self.subject, Message=message)
        except (BotoCoreError, ClientError) as e:
            logger.warning("SNS publish to %s failed: %s; message was: %s", self.topic_arn, e, message)
