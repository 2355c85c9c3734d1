"""CloudWatch implementation of the Metrics API."""

from datetime import datetime, timedelta, timezone
from typing import Any

from controlplane.aws.session import DEFAULT_TIMEOUT_SECONDS, create_client, translate_errors
from controlplane.errors import TransientError


class CloudWatchMetrics:
    """Latest datapoint of ``namespace``/``metric_name`` with ``dimension=resource_id``."""

    def __init__(
        self,
        region: str,
        namespace: str = "CWAgent",
        dimension: str = "VolumeId",
        statistic: str = "Maximum",
        period_seconds: int = 60,
        lookback_seconds: int = 600,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Any = None,
    ) -> None:
        self.namespace = namespace
        self.dimension = dimension
        self.statistic = statistic
        self.period_seconds = period_seconds
        self.lookback_seconds = lookback_seconds
        self._client = client or create_client("cloudwatch", region, timeout)

    def sample(self, metric_name: str, resource_id: str) -> tuple[float, float]:
        end = datetime.now(timezone.utc)
        with translate_errors(f"get {self.namespace}/{metric_name} for {resource_id}"):
            resp = self._client.get_metric_statistics(
                Namespace=self.namespace,
                MetricName=metric_name,
                Dimensions=[{"Name": self.dimension, "Value": resource_id}],
                StartTime=end - timedelta(seconds=self.lookback_seconds),
                EndTime=end,
                Period=self.period_seconds,
                Statistics=[self.statistic],
            )
        datapoints = resp.get("Datapoints", [])
        if not datapoints:
            raise TransientError(f"no {metric_name} datapoints for {resource_id}")
        latest = max(datapoints, key=lambda d: d["Timestamp"])
        return float(latest[self.statistic]), latest["Timestamp"].timestamp()
