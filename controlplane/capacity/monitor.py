"""Volume utilization sampling and edge-triggered threshold detection."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
import logging
import threading

from controlplane.errors import ControlPlaneError
from controlplane.models import ThresholdCrossed, UtilizationSample
from controlplane.shared.clock import Clock, SystemClock
from controlplane.shared.interfaces import MetricsApi
from controlplane.shared.retry import DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRIES, call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class ThresholdPolicy:
    """Defaults mirror a 90% alarm evaluated over two periods."""

    threshold: float = 90.0
    evaluation_periods: int = 2

    def breached(self, value: float) -> bool:
        return value >= self.threshold


class ThresholdDetector:
    """Fires once when a run of ``evaluation_periods`` samples at/above threshold completes.

    The run must drop below the threshold before another event can fire.
    """

    def __init__(self, policy: ThresholdPolicy) -> None:
        self.policy = policy
        self._streak = 0

    def feed(self, sample: UtilizationSample) -> ThresholdCrossed | None:
        if not self.policy.breached(sample.metric_value):
            self._streak = 0
            return None
        self._streak += 1
        if self._streak == self.policy.evaluation_periods:
            return ThresholdCrossed(volume_id=sample.volume_id, sample=sample)
        return None

    def reset(self) -> None:
        self._streak = 0


def detect(samples: Iterable[UtilizationSample], policy: ThresholdPolicy) -> Iterator[ThresholdCrossed]:
    """Lazily map a sample stream to its threshold events."""
    detector = ThresholdDetector(policy)
    for sample in samples:
        event = detector.feed(sample)
        if event is not None:
            yield event


class CapacityMonitor:
    def __init__(
        self,
        metrics: MetricsApi,
        volume_id: str,
        metric_name: str,
        policy: ThresholdPolicy | None = None,
        interval_seconds: float = 30.0,
        clock: Clock | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.metrics = metrics
        self.volume_id = volume_id
        self.metric_name = metric_name
        self.policy = policy or ThresholdPolicy()
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self.retries = retries
        self.backoff = backoff

    def sample_once(self) -> UtilizationSample:
        value, timestamp = call_with_retry(
            f"sample {self.metric_name} for {self.volume_id}",
            lambda: self.metrics.sample(self.metric_name, self.volume_id),
            retries=self.retries,
            backoff=self.backoff,
            clock=self.clock,
        )
        return UtilizationSample(volume_id=self.volume_id, metric_value=float(value), timestamp=timestamp)

    def samples(self, stop: threading.Event | None = None) -> Iterator[UtilizationSample]:
        """Infinite sample stream, one per interval; each call starts a fresh stream.

        Ends only when ``stop`` is set. A sample whose query fails, transiently past
        its retries or outright, is logged and skipped.
        """
        while stop is None or not stop.is_set():
            try:
                yield self.sample_once()
            except ControlPlaneError as e:
                logger.error("utilization sample for %s skipped: %s", self.volume_id, e)
            except Exception:
                logger.exception("utilization sample for %s skipped", self.volume_id)
            if self.clock.sleep(self.interval_seconds, stop):
                return

    def events(self, stop: threading.Event | None = None) -> Iterator[ThresholdCrossed]:
        for event in detect(self.samples(stop), self.policy):
            logger.warning(
                "volume %s utilization %.1f >= %.1f for %d samples",
                event.volume_id,
                event.sample.metric_value,
                self.policy.threshold,
                self.policy.evaluation_periods,
            )
            yield event
