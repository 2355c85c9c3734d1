"""Blue/green release state machine.

idle -> shifting -> monitoring -> committed | rolled-back -> idle

Each state has one handler; the handler returns the next state. Every failure
in shifting or monitoring ends in rolled-back, which restores the prior active
revision to full weight in a single routing call.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import threading
from typing import TypeVar

from controlplane.errors import (
    ControlPlaneError,
    InvariantViolation,
    ReleaseInFlight,
    StaleWriteError,
)
from controlplane.models import HealthState, ReleaseAttempt, ReleaseState, Revision, ServiceRecord
from controlplane.release.health import HealthGate
from controlplane.shared.clock import Clock, SystemClock
from controlplane.shared.interfaces import Notifier, RevisionDeployer, TrafficRoutingApi
from controlplane.shared.locks import KeyedLocks
from controlplane.shared.retry import DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRIES, call_with_retry
from controlplane.state.records import load_service, save_service
from controlplane.state.store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOTS = ("blue", "green")


@dataclass
class ReleasePolicy:
    """Canary 10% then full weight, five-minute dwell, step timeout and bake."""

    steps: list[float] = field(default_factory=lambda: [0.1, 1.0])
    dwell_seconds: float = 300.0
    step_timeout_seconds: float = 300.0
    bake_seconds: float = 300.0

    def __post_init__(self) -> None:
        if not self.steps or self.steps[-1] != 1.0:
            raise ValueError(f"release steps must end at 1.0, got {self.steps}")
        if any(b <= a for a, b in zip(self.steps, self.steps[1:])) or self.steps[0] <= 0:
            raise ValueError(f"release steps must increase from above 0, got {self.steps}")


def other_slot(slot: str) -> str:
    return SLOTS[1] if slot == SLOTS[0] else SLOTS[0]


def flag_rollback(store: StateStore, service_id: str, reason: str, attempts: int = 5) -> bool:
    """Mark the service's in-flight attempt for rollback from another process.

    Returns False when no release is in flight.
    """
    for i in range(attempts):
        service = load_service(store, service_id)
        if service is None or service.attempt is None or not service.state.in_flight:
            return False
        service.attempt.rollback_requested = True
        service.attempt.reason = reason
        try:
            save_service(store, service)
            return True
        except StaleWriteError:
            if i == attempts - 1:
                raise
    return False


def request_release(store: StateStore, service_id: str, image_ref: str) -> ServiceRecord:
    """Queue ``image_ref`` for the running controller to release.

    Raises:
        ReleaseInFlight: a release is in flight or another image is already queued.
    """
    service = load_service(store, service_id)
    if service is None:
        raise InvariantViolation(f"service {service_id} has no record; start the controller first")
    if service.state.in_flight:
        raise ReleaseInFlight(f"service {service_id} is {service.state.value}")
    if service.requested_image and service.requested_image != image_ref:
        raise ReleaseInFlight(f"service {service_id} already has {service.requested_image} queued")
    service.requested_image = image_ref
    try:
        return save_service(store, service)
    except StaleWriteError as e:
        raise ReleaseInFlight(f"service {service_id} changed while queueing {image_ref}") from e


class ReleaseOrchestrator:
    def __init__(
        self,
        service_id: str,
        store: StateStore,
        routing: TrafficRoutingApi,
        deployer: RevisionDeployer,
        gate: HealthGate,
        notifier: Notifier,
        policy: ReleasePolicy | None = None,
        clock: Clock | None = None,
        locks: KeyedLocks | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.service_id = service_id
        self.store = store
        self.routing = routing
        self.deployer = deployer
        self.gate = gate
        self.notifier = notifier
        self.policy = policy or ReleasePolicy()
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLocks()
        self.retries = retries
        self.backoff = backoff
        self._cancel = threading.Event()
        self._cancel_reason = ""
        self._restore_alerted: float | None = None
        self._handlers: dict[ReleaseState, Callable[[ServiceRecord], ReleaseState]] = {
            ReleaseState.SHIFTING: self._shifting,
            ReleaseState.MONITORING: self._monitoring,
            ReleaseState.COMMITTED: self._committed,
            ReleaseState.ROLLED_BACK: self._rolled_back,
        }

    # --- public operations ---

    def bootstrap(self, image_ref: str, slot: str = SLOTS[0]) -> ServiceRecord:
        """Create the service record with ``image_ref`` live in ``slot`` at full weight, if absent."""
        with self.locks.hold(self.service_id):
            service = load_service(self.store, self.service_id)
            if service is not None:
                return service
            revision = Revision(id=slot, image_ref=image_ref, traffic_weight=1.0)
            self._call(
                f"route {self.service_id} to {slot}",
                lambda: self.routing.set_weights({slot: 1.0, other_slot(slot): 0.0}),
            )
            service = ServiceRecord(id=self.service_id, active_revision_id=slot, revisions={slot: revision})
            save_service(self.store, service)
            logger.info("service %s bootstrapped with %s in %s", self.service_id, image_ref, slot)
            return service

    def status(self) -> ServiceRecord:
        return self._load()

    def deploy(self, image_ref: str) -> ReleaseAttempt:
        """Release ``image_ref`` into the free slot and drive it to commit or rollback.

        Raises:
            ReleaseInFlight: another attempt for this service is in flight.
        """
        with self.locks.hold(self.service_id):
            service = self._load()
            if service.state.in_flight:
                raise ReleaseInFlight(
                    f"service {self.service_id} is {service.state.value} "
                    f"(candidate {service.attempt.candidate_revision_id if service.attempt else '?'})"
                )
            candidate_id = other_slot(service.active_revision_id)
            candidate = Revision(id=candidate_id, image_ref=image_ref, traffic_weight=0.0)
            service.revisions[candidate_id] = candidate
            service.attempt = ReleaseAttempt(
                candidate_revision_id=candidate_id,
                started_at=self.clock.now(),
                state=ReleaseState.SHIFTING,
            )
            try:
                save_service(self.store, service)
            except StaleWriteError as e:
                raise ReleaseInFlight(f"service {self.service_id} changed while starting a release") from e
            self._cancel.clear()
            self._cancel_reason = ""
            self.gate.reset(candidate_id)
            logger.info(
                "release of %s to %s started in slot %s (active %s)",
                image_ref,
                self.service_id,
                candidate_id,
                service.active_revision_id,
            )
            try:
                self._call(f"deploy {candidate_id}", lambda: self.deployer.deploy(candidate))
            except Exception as e:
                logger.error("service %s: deploy of %s failed: %s", self.service_id, candidate_id, e)
                service.attempt.reason = f"candidate deploy failed: {e}"
                self._drive(service, ReleaseState.ROLLED_BACK)
                return service.attempt
            self._drive(service, ReleaseState.SHIFTING)
            return service.attempt

    def poll_requests(self) -> ReleaseAttempt | None:
        """Start the queued release, if any; returns the finished attempt."""
        with self.locks.hold(self.service_id):
            service = load_service(self.store, self.service_id)
            if service is None or not service.requested_image or service.state.in_flight:
                return None
            image_ref = service.requested_image
            service.requested_image = None
            save_service(self.store, service)
            return self.deploy(image_ref)

    def request_rollback(self, reason: str = "operator request") -> None:
        """Preempt the in-flight release; dwell and bake waits end immediately."""
        self._cancel_reason = reason
        self._cancel.set()
        logger.warning("rollback requested for %s: %s", self.service_id, reason)

    def recover(self, reason: str = "controller restarted mid-release") -> ServiceRecord | None:
        """Roll back an attempt left in flight by a previous process or a failed rollback.

        A no-op when nothing is in flight. The release loop calls this every
        tick, so a rollback whose traffic restore failed is retried until it lands.
        """
        with self.locks.hold(self.service_id):
            service = load_service(self.store, self.service_id)
            if service is None or service.attempt is None or not service.state.in_flight:
                return service
            logger.warning(
                "service %s: found %s attempt for %s; rolling back",
                self.service_id,
                service.attempt.state.value,
                service.attempt.candidate_revision_id,
            )
            service.attempt.reason = service.attempt.reason or reason
            self._drive(service, ReleaseState.ROLLED_BACK)
            return service

    # --- state machine ---

    def _drive(self, service: ServiceRecord, state: ReleaseState) -> None:
        while state is not ReleaseState.IDLE:
            attempt = self._attempt(service)
            if state.in_flight and attempt.state is not state:
                attempt.state = state
                self._persist(service)
                logger.info("service %s release -> %s", self.service_id, state.value)
            try:
                state = self._handlers[state](service)
            except Exception as e:
                if not state.in_flight:
                    raise
                if isinstance(e, ControlPlaneError):
                    logger.error("service %s release failed in %s: %s", self.service_id, state.value, e)
                else:
                    logger.exception("service %s release failed in %s", self.service_id, state.value)
                attempt.reason = str(e) or type(e).__name__
                state = ReleaseState.ROLLED_BACK

    def _shifting(self, service: ServiceRecord) -> ReleaseState:
        attempt = self._attempt(service)
        candidate = service.revisions[attempt.candidate_revision_id]
        steps = self.policy.steps
        for i, weight in enumerate(steps):
            if weight <= candidate.traffic_weight:
                continue
            reason = self._await_healthy(service, candidate.id)
            if reason:
                attempt.reason = reason
                return ReleaseState.ROLLED_BACK
            self._set_weights(service, {candidate.id: weight, service.active_revision_id: 1.0 - weight})
            logger.info("service %s: %s at %.0f%%", self.service_id, candidate.id, weight * 100)
            if i < len(steps) - 1:
                reason = self._watch(service, candidate.id, self.policy.dwell_seconds)
                if reason:
                    attempt.reason = reason
                    return ReleaseState.ROLLED_BACK
        return ReleaseState.MONITORING

    def _monitoring(self, service: ServiceRecord) -> ReleaseState:
        attempt = self._attempt(service)
        reason = self._watch(service, attempt.candidate_revision_id, self.policy.bake_seconds)
        if reason:
            attempt.reason = reason
            return ReleaseState.ROLLED_BACK
        return ReleaseState.COMMITTED

    def _committed(self, service: ServiceRecord) -> ReleaseState:
        attempt = self._attempt(service)
        candidate_id = attempt.candidate_revision_id
        previous_id = service.active_revision_id
        if service.revisions[candidate_id].traffic_weight != 1.0:
            self._set_weights(service, {candidate_id: 1.0, previous_id: 0.0})
        self._decommission(previous_id)
        service.active_revision_id = candidate_id
        service.revisions.pop(previous_id, None)
        attempt.state = ReleaseState.COMMITTED
        self._persist(service)
        logger.info(
            "service %s release committed: %s (%s) active, %s decommissioned",
            self.service_id,
            candidate_id,
            service.revisions[candidate_id].image_ref,
            previous_id,
        )
        return ReleaseState.IDLE

    def _rolled_back(self, service: ServiceRecord) -> ReleaseState:
        attempt = self._attempt(service)
        candidate_id = attempt.candidate_revision_id
        active_id = service.active_revision_id
        if candidate_id == active_id:
            raise InvariantViolation(f"service {self.service_id}: candidate and active are both {active_id}")
        try:
            self._set_weights(service, {active_id: 1.0, candidate_id: 0.0})
        except Exception as e:
            logger.error(
                "service %s: rollback could not restore %s to full weight: %s",
                self.service_id,
                active_id,
                e,
            )
            if self._restore_alerted != attempt.started_at:
                self._restore_alerted = attempt.started_at
                self.notifier.notify(
                    f"Rollback of {self.service_id} could not restore traffic to {active_id}: {e}; "
                    "retrying every release tick"
                )
            raise
        self._restore_alerted = None
        self._decommission(candidate_id)
        image_ref = service.revisions[candidate_id].image_ref if candidate_id in service.revisions else "?"
        service.revisions.pop(candidate_id, None)
        attempt.state = ReleaseState.ROLLED_BACK
        self._persist(service)
        logger.warning(
            "service %s release of %s rolled back: %s",
            self.service_id,
            image_ref,
            attempt.reason,
        )
        self.notifier.notify(
            f"Release of {image_ref} to {self.service_id} rolled back; "
            f"{active_id} restored to full traffic. Reason: {attempt.reason}"
        )
        return ReleaseState.IDLE

    # --- helpers ---

    def _preempted(self) -> str | None:
        if self._cancel.is_set():
            return f"rollback requested: {self._cancel_reason}"
        stored = load_service(self.store, self.service_id)
        if stored is not None and stored.attempt is not None and stored.attempt.rollback_requested:
            return f"rollback requested: {stored.attempt.reason or 'operator request'}"
        return None

    def _await_healthy(self, service: ServiceRecord, revision_id: str) -> str | None:
        """Wait for HEALTHY within the step timeout; return a rollback reason otherwise."""
        deadline = self.clock.now() + self.policy.step_timeout_seconds
        while True:
            reason = self._preempted()
            if reason:
                return reason
            state = self.gate.observe(revision_id)
            service.revisions[revision_id].health_state = state
            if state is HealthState.HEALTHY:
                return None
            if state is HealthState.UNHEALTHY:
                return f"{revision_id} unhealthy before shifting"
            if self.clock.now() >= deadline:
                return (
                    f"{revision_id} not healthy within {self.policy.step_timeout_seconds:.0f}s step timeout"
                )
            self.clock.sleep(self.gate.policy.interval_seconds, self._cancel)

    def _watch(self, service: ServiceRecord, revision_id: str, seconds: float) -> str | None:
        """Observe health for ``seconds``; return a rollback reason on the first unhealthy verdict."""
        end = self.clock.now() + seconds
        while self.clock.now() < end:
            reason = self._preempted()
            if reason:
                return reason
            state = self.gate.observe(revision_id)
            service.revisions[revision_id].health_state = state
            if state is HealthState.UNHEALTHY:
                return f"{revision_id} unhealthy during {service.state.value}"
            remaining = end - self.clock.now()
            self.clock.sleep(min(self.gate.policy.interval_seconds, remaining), self._cancel)
        return self._preempted()

    def _set_weights(self, service: ServiceRecord, weights: dict[str, float]) -> None:
        if abs(sum(weights.values()) - 1.0) > 1e-9:
            raise InvariantViolation(f"weights for {self.service_id} do not sum to 1: {weights}")
        self._call(f"set weights {weights}", lambda: self.routing.set_weights(weights))
        for revision_id, weight in weights.items():
            if revision_id in service.revisions:
                service.revisions[revision_id].traffic_weight = weight
        self._persist(service)

    def _decommission(self, revision_id: str) -> None:
        try:
            self._call(f"decommission {revision_id}", lambda: self.deployer.decommission(revision_id))
        except Exception as e:
            logger.error("service %s: decommission of %s failed: %s", self.service_id, revision_id, e)
            self.notifier.notify(f"Decommission of {revision_id} in {self.service_id} failed: {e}")

    def _attempt(self, service: ServiceRecord) -> ReleaseAttempt:
        if service.attempt is None:
            raise InvariantViolation(f"service {self.service_id} has no release attempt to drive")
        return service.attempt

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        return call_with_retry(operation, fn, retries=self.retries, backoff=self.backoff, clock=self.clock)

    def _load(self) -> ServiceRecord:
        service = load_service(self.store, self.service_id)
        if service is None:
            raise InvariantViolation(f"service {self.service_id} has no record; bootstrap it first")
        return service

    def _persist(self, service: ServiceRecord) -> None:
        """Save, folding in a rollback flag another process may have written meanwhile."""
        for _ in range(3):
            try:
                save_service(self.store, service)
                return
            except StaleWriteError:
                stored = load_service(self.store, self.service_id)
                if stored is None:
                    raise
                if stored.attempt is not None and service.attempt is not None and stored.attempt.rollback_requested:
                    service.attempt.rollback_requested = True
                    if not service.attempt.reason:
                        service.attempt.reason = stored.attempt.reason
                service.version = stored.version
        save_service(self.store, service)
