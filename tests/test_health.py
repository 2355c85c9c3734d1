"""Tests for the debounced HealthGate."""

import threading

from fakes import FakeClock, FakeReadiness

from controlplane.models import HealthState
from controlplane.release.health import HealthGate, HealthPolicy


def _scripted(results: list[bool]) -> FakeReadiness:
    queue = list(results)
    return FakeReadiness(result=lambda _rev: queue.pop(0))


def test_two_consecutive_successes_make_healthy() -> None:
    """The first success leaves the verdict unknown; the second makes it healthy."""
    gate = HealthGate(_scripted([True, True]), clock=FakeClock())

    assert gate.observe("green") is HealthState.UNKNOWN
    assert gate.observe("green") is HealthState.HEALTHY


def test_five_consecutive_failures_make_unhealthy() -> None:
    """Four failures keep the previous verdict; the fifth flips it to unhealthy."""
    gate = HealthGate(_scripted([True, True] + [False] * 5), clock=FakeClock())
    gate.observe("green")
    gate.observe("green")

    verdicts = [gate.observe("green") for _ in range(5)]

    assert verdicts[:4] == [HealthState.HEALTHY] * 4
    assert verdicts[4] is HealthState.UNHEALTHY


def test_intermittent_failures_do_not_flap() -> None:
    """A success in between resets the failure count."""
    gate = HealthGate(_scripted(([False] * 4 + [True]) * 3), clock=FakeClock())

    verdicts = {gate.observe("green") for _ in range(15)}

    assert HealthState.UNHEALTHY not in verdicts


def test_probe_exception_counts_as_failure() -> None:
    """A readiness probe that raises is treated as a failed probe."""

    def boom(_rev: str) -> bool:
        raise ConnectionError("refused")

    gate = HealthGate(FakeReadiness(result=boom), HealthPolicy(unhealthy_threshold=2), clock=FakeClock())

    gate.observe("green")
    assert gate.observe("green") is HealthState.UNHEALTHY


def test_check_polls_at_interval_until_definite() -> None:
    """check() probes every interval and returns once the verdict is definite."""
    clock = FakeClock()
    readiness = FakeReadiness()
    gate = HealthGate(readiness, clock=clock)

    assert gate.check("green") is HealthState.HEALTHY
    assert len(readiness.probes) == 2
    assert clock.now() == 30.0


def test_check_returns_unknown_at_deadline() -> None:
    """With no definite verdict by the deadline, check() returns unknown."""
    clock = FakeClock()
    gate = HealthGate(
        FakeReadiness(result=lambda _rev: False), HealthPolicy(unhealthy_threshold=100), clock=clock
    )

    assert gate.check("green", deadline=90.0) is HealthState.UNKNOWN
    assert clock.now() == 90.0


def test_check_stops_when_cancelled() -> None:
    """A set cancel event ends check() after the current probe."""
    cancel = threading.Event()
    cancel.set()
    gate = HealthGate(FakeReadiness(), clock=FakeClock())

    assert gate.check("green", cancel=cancel) is HealthState.UNKNOWN


def test_reset_forgets_previous_verdict() -> None:
    """reset() returns a revision to unknown."""
    gate = HealthGate(FakeReadiness(), clock=FakeClock())
    gate.observe("green")
    gate.observe("green")

    gate.reset("green")

    assert gate.state("green") is HealthState.UNKNOWN
