"""Debounced readiness verdict per revision."""

from dataclasses import dataclass
import logging
import threading

from controlplane.models import HealthState
from controlplane.shared.clock import Clock, SystemClock
from controlplane.shared.interfaces import ReadinessApi

logger = logging.getLogger(__name__)


@dataclass
class HealthPolicy:
    """Defaults match the service's container and target-group health checks."""

    interval_seconds: float = 30.0
    timeout_seconds: float = 5.0
    unhealthy_threshold: int = 5
    healthy_threshold: int = 2


@dataclass
class _Counters:
    successes: int = 0
    failures: int = 0
    state: HealthState = HealthState.UNKNOWN


class HealthGate:
    """Turns individual probes into a verdict.

    ``healthy_threshold`` consecutive successes give HEALTHY,
    ``unhealthy_threshold`` consecutive failures give UNHEALTHY; otherwise the
    previous verdict stands. A probe that raises counts as a failure. The probe
    timeout is enforced by the ReadinessApi implementation.
    """

    def __init__(
        self,
        readiness: ReadinessApi,
        policy: HealthPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.readiness = readiness
        self.policy = policy or HealthPolicy()
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._counters: dict[str, _Counters] = {}

    def state(self, revision_id: str) -> HealthState:
        with self._lock:
            counters = self._counters.get(revision_id)
            return counters.state if counters else HealthState.UNKNOWN

    def reset(self, revision_id: str) -> None:
        with self._lock:
            self._counters.pop(revision_id, None)

    def observe(self, revision_id: str) -> HealthState:
        """Run one probe and return the updated verdict."""
        try:
            ok = bool(self.readiness.probe(revision_id))
        except Exception as e:
            logger.warning("readiness probe for %s raised: %s", revision_id, e)
            ok = False
        with self._lock:
            counters = self._counters.setdefault(revision_id, _Counters())
            previous = counters.state
            if ok:
                counters.successes += 1
                counters.failures = 0
                if counters.successes >= self.policy.healthy_threshold:
                    counters.state = HealthState.HEALTHY
            else:
                counters.failures += 1
                counters.successes = 0
                if counters.failures >= self.policy.unhealthy_threshold:
                    counters.state = HealthState.UNHEALTHY
            if counters.state != previous:
                logger.info("revision %s health %s -> %s", revision_id, previous.value, counters.state.value)
            return counters.state

    def check(
        self,
        revision_id: str,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
    ) -> HealthState:
        """Probe every interval until the verdict is definite, ``deadline`` passes, or ``cancel`` is set."""
        while True:
            state = self.observe(revision_id)
            if state != HealthState.UNKNOWN:
                return state
            if deadline is not None and self.clock.now() >= deadline:
                return state
            if self.clock.sleep(self.policy.interval_seconds, cancel):
                return state
