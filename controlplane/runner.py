"""Wire the controller from configuration and run its loops.

Two independent daemon threads: the capacity loop (monitor -> autoscaler,
plus deferred re-evaluation) and the release loop (queued releases). They share
only the state store and the per-key locks.
"""

from dataclasses import dataclass, field
import logging
import threading

from controlplane.aws.compute import Ec2Compute
from controlplane.aws.deployer import EcsDeployer
from controlplane.aws.metrics import CloudWatchMetrics
from controlplane.aws.notify import SnsNotifier
from controlplane.aws.routing import AlbWeightedRouting
from controlplane.aws.storage import EbsStorage
from controlplane.binding.manager import VolumeBindingManager
from controlplane.binding.pool import InstancePool
from controlplane.capacity.autoscaler import StorageAutoscaleController
from controlplane.capacity.monitor import CapacityMonitor, ThresholdDetector
from controlplane.config import ControllerConfig
from controlplane.errors import ControlPlaneError, InvariantViolation
from controlplane.models import UtilizationSample
from controlplane.net.readiness import HttpReadiness
from controlplane.net.slack import SlackNotifier
from controlplane.release.health import HealthGate
from controlplane.release.orchestrator import ReleaseOrchestrator
from controlplane.shared.clock import Clock, SystemClock
from controlplane.shared.interfaces import Notifier, StorageApi
from controlplane.shared.locks import KeyedLocks
from controlplane.shared.notify import FanoutNotifier
from controlplane.shared.retry import call_with_retry
from controlplane.state.dynamodb import DynamoDbStateStore
from controlplane.state.store import InMemoryStateStore, StateStore

logger = logging.getLogger(__name__)


@dataclass
class Controller:
    """Every component built for one service; unconfigured sections are None."""

    config: ControllerConfig
    store: StateStore
    notifier: Notifier
    clock: Clock
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    storage: StorageApi | None = None
    pool: InstancePool | None = None
    binding: VolumeBindingManager | None = None
    monitor: CapacityMonitor | None = None
    autoscaler: StorageAutoscaleController | None = None
    orchestrator: ReleaseOrchestrator | None = None

    @property
    def volume_id(self) -> str:
        if self.config.volume is None or not self.config.volume.id:
            raise SystemExit("spec.volume.id is required to manage the volume")
        return self.config.volume.id


def build_store(config: ControllerConfig) -> StateStore:
    if config.state.backend == "memory":
        logger.warning("state backend is in-memory; controller state will not survive a restart")
        return InMemoryStateStore()
    return DynamoDbStateStore(config.state_table, config.region)


def build_notifier(config: ControllerConfig) -> FanoutNotifier:
    channels: list[Notifier] = []
    if config.notifications.sns_topic_arn:
        channels.append(
            SnsNotifier(config.region, config.notifications.sns_topic_arn, subject=config.service_name)
        )
    if config.notifications.slack_webhook_url:
        channels.append(SlackNotifier(config.notifications.slack_webhook_url))
    return FanoutNotifier(channels)


def build_controller(config: ControllerConfig, clock: Clock | None = None) -> Controller:
    """Build components against AWS for every section present in ``config``."""
    clock = clock or SystemClock()
    collab = config.collaborators
    ctl = Controller(
        config=config,
        store=build_store(config),
        notifier=build_notifier(config),
        clock=clock,
    )

    if config.volume is not None:
        vol = config.volume
        compute = Ec2Compute(config.region, device=vol.device, timeout=collab.timeout_seconds)
        ctl.storage = EbsStorage(config.region, timeout=collab.timeout_seconds)
        metrics = CloudWatchMetrics(
            config.region,
            namespace=vol.metric.namespace,
            dimension=vol.metric.dimension,
            statistic=vol.metric.statistic,
            timeout=collab.timeout_seconds,
        )
        ctl.pool = InstancePool(
            compute, vol.pool_id, retries=collab.retries, backoff=collab.backoff_seconds, clock=clock
        )
        ctl.binding = VolumeBindingManager(
            ctl.store,
            compute,
            ctl.pool,
            ctl.notifier,
            locks=ctl.locks,
            retries=collab.retries,
            backoff=collab.backoff_seconds,
            clock=clock,
        )
        if vol.id:
            monitor = CapacityMonitor(
                metrics,
                vol.id,
                vol.metric.name,
                policy=vol.metric.threshold_policy(),
                interval_seconds=vol.metric.interval_seconds,
                clock=clock,
                retries=collab.retries,
                backoff=collab.backoff_seconds,
            )
            ctl.monitor = monitor
            ctl.autoscaler = StorageAutoscaleController(
                ctl.store,
                ctl.storage,
                ctl.notifier,
                utilization=lambda _volume_id: monitor.sample_once().metric_value,
                max_size_bytes=vol.autoscale.max_size_bytes,
                increment_bytes=vol.autoscale.increment_bytes,
                cooldown_seconds=vol.autoscale.cooldown_seconds,
                policy=monitor.policy,
                locks=ctl.locks,
                clock=clock,
                retries=collab.retries,
                backoff=collab.backoff_seconds,
            )

    if config.release is not None:
        rel = config.release
        readiness = HttpReadiness(
            {slot: s.health_url for slot, s in rel.slots.items()},
            timeout=rel.health.timeout_seconds,
        )
        ctl.orchestrator = ReleaseOrchestrator(
            config.service_name,
            ctl.store,
            AlbWeightedRouting(
                config.region,
                rel.listener_arn,
                {slot: s.target_group_arn for slot, s in rel.slots.items()},
                timeout=collab.timeout_seconds,
            ),
            EcsDeployer(
                config.region,
                rel.cluster,
                {slot: s.ecs_service for slot, s in rel.slots.items()},
                container_name=rel.container_name or config.service_name,
                timeout=collab.timeout_seconds,
            ),
            HealthGate(readiness, rel.health, clock=clock),
            ctl.notifier,
            policy=rel.release_policy(),
            clock=clock,
            locks=ctl.locks,
            retries=collab.retries,
            backoff=collab.backoff_seconds,
        )
    return ctl


def prepare_volume(ctl: Controller) -> str:
    """Load the instance pool and register the managed volume; returns its id."""
    if ctl.binding is None or ctl.storage is None or ctl.pool is None:
        raise SystemExit("spec.volume is not configured")
    volume_id = ctl.volume_id
    storage = ctl.storage
    size = call_with_retry(
        f"get size of {volume_id}",
        lambda: storage.get_volume_size(volume_id),
        retries=ctl.config.collaborators.retries,
        backoff=ctl.config.collaborators.backoff_seconds,
        clock=ctl.clock,
    )
    ctl.pool.refresh()
    ctl.binding.register(volume_id, size)
    return volume_id


class ControllerRunner:
    """Starts, supervises and stops the controller loops."""

    def __init__(self, controller: Controller, release_poll_seconds: float = 10.0) -> None:
        self.controller = controller
        self.release_poll_seconds = release_poll_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def prepare(self) -> None:
        """Restore state left by a previous process before any loop starts."""
        ctl = self.controller
        if ctl.autoscaler is not None:
            prepare_volume(ctl)
            ctl.autoscaler.reconcile(ctl.volume_id)
        if ctl.orchestrator is not None and ctl.config.release is not None:
            ctl.orchestrator.bootstrap(ctl.config.release.initial_image)
            ctl.orchestrator.recover()

    def start(self) -> None:
        self.prepare()
        ctl = self.controller
        if ctl.monitor is not None and ctl.autoscaler is not None:
            self._spawn("capacity", self.capacity_loop)
        if ctl.orchestrator is not None:
            self._spawn("release", self.release_loop)
        logger.info("controller for %s started (%d loops)", ctl.config.service_name, len(self._threads))

    def _spawn(self, name: str, target) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def capacity_loop(self) -> None:
        ctl = self.controller
        if ctl.monitor is None or ctl.autoscaler is None:
            raise InvariantViolation("capacity loop needs a monitor and an autoscaler")
        detector = ThresholdDetector(ctl.monitor.policy)
        for sample in ctl.monitor.samples(self._stop):
            self.capacity_tick(detector, sample)

    def capacity_tick(self, detector: ThresholdDetector, sample: UtilizationSample) -> None:
        """Feed one sample; errors are logged so the loop keeps sampling."""
        ctl = self.controller
        if ctl.autoscaler is None:
            raise InvariantViolation("capacity tick needs an autoscaler")
        try:
            event = detector.feed(sample)
            if event is not None:
                outcome = ctl.autoscaler.on_threshold_crossed(event.volume_id)
                logger.info("threshold event for %s: %s", event.volume_id, outcome.value)
            ctl.autoscaler.process_deferred()
        except ControlPlaneError as e:
            logger.error("capacity loop: %s", e)
        except Exception:
            logger.exception("capacity loop: unexpected error")

    def release_loop(self) -> None:
        ctl = self.controller
        while not self._stop.is_set():
            self.release_tick()
            if ctl.clock.sleep(self.release_poll_seconds, self._stop):
                return

    def release_tick(self) -> None:
        """Finish any rollback left in flight, then start the queued release, if any."""
        ctl = self.controller
        if ctl.orchestrator is None:
            raise InvariantViolation("release tick needs an orchestrator")
        try:
            ctl.orchestrator.recover("rollback retried after traffic restore failed")
            attempt = ctl.orchestrator.poll_requests()
            if attempt is not None:
                logger.info(
                    "release of %s finished: %s", attempt.candidate_revision_id, attempt.state.value
                )
        except ControlPlaneError as e:
            logger.error("release loop: %s", e)
        except Exception:
            logger.exception("release loop: unexpected error")

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self.controller.orchestrator is not None:
            self.controller.orchestrator.request_rollback("controller shutting down")
        for thread in self._threads:
            thread.join(timeout)

    def wait(self) -> None:
        for thread in self._threads:
            while thread.is_alive():
                thread.join(1.0)
