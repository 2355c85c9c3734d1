"""Tests for controller wiring and the runner loops."""

from pathlib import Path
from unittest.mock import MagicMock, patch

from fakes import FakeClock, FakeCompute, FakeDeployer, FakeReadiness, FakeRouting, FakeStorage, RecordingNotifier
import pytest

from controlplane.binding.manager import VolumeBindingManager
from controlplane.binding.pool import InstancePool
from controlplane.capacity.autoscaler import GIB, ResizeOutcome, StorageAutoscaleController
from controlplane.capacity.monitor import ThresholdPolicy
from controlplane.config import ControllerConfig
from controlplane.errors import CollaboratorError, SizeCapExceeded, TransientError
from controlplane.models import LifecycleState, ReleaseState, UtilizationSample
from controlplane.net.slack import SlackNotifier
from controlplane.release.health import HealthGate
from controlplane.release.orchestrator import ReleaseOrchestrator, request_release
from controlplane.runner import (
    Controller,
    ControllerRunner,
    build_controller,
    build_notifier,
    build_store,
    prepare_volume,
)
from controlplane.state.records import load_service, load_volume
from controlplane.state.store import InMemoryStateStore

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"
VOL = "vol-0123456789abcdef0"


def _config(name: str = "controller.yaml") -> ControllerConfig:
    return ControllerConfig.from_file(str(FIXTURES / name))


def _fake_controller() -> tuple[Controller, FakeStorage, FakeRouting]:
    """Full controller for the example service, built on in-memory collaborators."""
    config = _config()
    clock = FakeClock()
    store = InMemoryStateStore()
    notifier = RecordingNotifier()
    compute = FakeCompute({"i-1": LifecycleState.RUNNING})
    storage = FakeStorage({VOL: 100 * GIB})
    routing = FakeRouting()
    ctl = Controller(config=config, store=store, notifier=notifier, clock=clock)
    ctl.storage = storage
    ctl.pool = InstancePool(compute, "sequencer-asg", clock=clock)
    ctl.binding = VolumeBindingManager(store, compute, ctl.pool, notifier, locks=ctl.locks, clock=clock)
    ctl.autoscaler = StorageAutoscaleController(
        store,
        storage,
        notifier,
        utilization=lambda _v: 50.0,
        max_size_bytes=200 * GIB,
        locks=ctl.locks,
        clock=clock,
    )
    ctl.orchestrator = ReleaseOrchestrator(
        config.service_name,
        store,
        routing,
        FakeDeployer(),
        HealthGate(FakeReadiness(), clock=clock),
        notifier,
        clock=clock,
        locks=ctl.locks,
    )
    return ctl, storage, routing


@patch("controlplane.aws.session.boto3.client")
def test_build_controller_full(mock_client: MagicMock) -> None:
    """Every configured section gets its components."""
    ctl = build_controller(_config(), clock=FakeClock())

    assert ctl.binding is not None
    assert ctl.monitor is not None
    assert ctl.autoscaler is not None
    assert ctl.orchestrator is not None
    assert ctl.orchestrator.policy.steps == [0.1, 1.0]
    assert ctl.volume_id == VOL
    services = {c.args[0] for c in mock_client.call_args_list}
    assert {"dynamodb", "ec2", "cloudwatch", "elbv2", "ecs", "sns"} <= services


@patch("controlplane.aws.session.boto3.client")
def test_build_controller_without_volume_id(mock_client: MagicMock) -> None:
    """Binding works from the pool alone; capacity needs a volume id and release needs its section."""
    ctl = build_controller(_config("controller-minimal.yaml"), clock=FakeClock())

    assert ctl.binding is not None
    assert ctl.monitor is None
    assert ctl.autoscaler is None
    assert ctl.orchestrator is None
    with pytest.raises(SystemExit):
        ctl.volume_id


def test_build_store_memory() -> None:
    """The memory backend needs no AWS access."""
    config = _config("controller-minimal.yaml")
    config.state.backend = "memory"

    assert isinstance(build_store(config), InMemoryStateStore)


def test_build_notifier_channels() -> None:
    """Only configured channels are added."""
    config = _config("controller-minimal.yaml")
    config.notifications.slack_webhook_url = "https://hooks.slack.com/services/T/B/X"

    notifier = build_notifier(config)

    assert len(notifier.channels) == 1
    assert isinstance(notifier.channels[0], SlackNotifier)


def test_prepare_volume_registers_current_size() -> None:
    """prepare_volume records the volume at the size storage reports."""
    ctl, _, _ = _fake_controller()

    assert prepare_volume(ctl) == VOL
    assert load_volume(ctl.store, VOL).size_bytes == 100 * GIB


def test_prepare_restores_state_before_loops() -> None:
    """prepare registers the volume, reconciles resizes and bootstraps the release record."""
    ctl, storage, routing = _fake_controller()
    runner = ControllerRunner(ctl)

    runner.prepare()

    assert load_volume(ctl.store, VOL) is not None
    assert storage.resize_calls == []
    service = load_service(ctl.store, "sequencer")
    assert service.active.image_ref == ctl.config.release.initial_image
    assert routing.weights == {"blue": 1.0, "green": 0.0}


def test_capacity_loop_feeds_autoscaler() -> None:
    """Threshold events reach the autoscaler; deferred events are re-checked on every sample."""
    config = _config()
    monitor = MagicMock()
    monitor.policy = ThresholdPolicy(threshold=90.0, evaluation_periods=2)
    monitor.samples.return_value = iter(
        [UtilizationSample(volume_id=VOL, metric_value=v, timestamp=float(i)) for i, v in enumerate([50, 95, 96, 97])]
    )
    autoscaler = MagicMock()
    autoscaler.on_threshold_crossed.return_value = ResizeOutcome.RESIZED
    ctl = Controller(config=config, store=InMemoryStateStore(), notifier=RecordingNotifier(), clock=FakeClock())
    ctl.monitor = monitor
    ctl.autoscaler = autoscaler

    ControllerRunner(ctl).capacity_loop()

    autoscaler.on_threshold_crossed.assert_called_once_with(VOL)
    assert autoscaler.process_deferred.call_count == 4


def test_capacity_loop_survives_controller_errors() -> None:
    """A fatal resize error is logged and the loop keeps sampling."""
    config = _config()
    monitor = MagicMock()
    monitor.policy = ThresholdPolicy(threshold=90.0, evaluation_periods=1)
    monitor.samples.return_value = iter(
        [UtilizationSample(volume_id=VOL, metric_value=95.0, timestamp=0.0),
         UtilizationSample(volume_id=VOL, metric_value=10.0, timestamp=1.0),
         UtilizationSample(volume_id=VOL, metric_value=95.0, timestamp=2.0)]
    )
    autoscaler = MagicMock()
    autoscaler.on_threshold_crossed.side_effect = SizeCapExceeded(VOL, 220 * GIB, 200 * GIB)
    ctl = Controller(config=config, store=InMemoryStateStore(), notifier=RecordingNotifier(), clock=FakeClock())
    ctl.monitor = monitor
    ctl.autoscaler = autoscaler

    ControllerRunner(ctl).capacity_loop()

    assert autoscaler.on_threshold_crossed.call_count == 2


def test_capacity_loop_keeps_running_after_rejected_resize() -> None:
    """A non-retryable resize error is reported once and the next threshold event still resizes."""
    ctl, storage, _ = _fake_controller()
    prepare_volume(ctl)
    storage.resize_errors = [CollaboratorError(f"resize {VOL}: VolumeModificationRateExceeded")]
    monitor = MagicMock()
    monitor.policy = ThresholdPolicy(threshold=90.0, evaluation_periods=1)
    monitor.samples.return_value = iter(
        [UtilizationSample(volume_id=VOL, metric_value=v, timestamp=float(i)) for i, v in enumerate([95, 10, 95])]
    )
    ctl.monitor = monitor

    ControllerRunner(ctl).capacity_loop()

    assert load_volume(ctl.store, VOL).size_bytes == 120 * GIB
    assert len(ctl.notifier.messages) == 1
    assert "VolumeModificationRateExceeded" in ctl.notifier.messages[0]


def test_capacity_loop_survives_unexpected_errors() -> None:
    """Errors outside the controller taxonomy are logged and sampling continues."""
    config = _config()
    monitor = MagicMock()
    monitor.policy = ThresholdPolicy(threshold=90.0, evaluation_periods=1)
    monitor.samples.return_value = iter(
        [UtilizationSample(volume_id=VOL, metric_value=v, timestamp=float(i)) for i, v in enumerate([95, 10, 95])]
    )
    autoscaler = MagicMock()
    autoscaler.on_threshold_crossed.side_effect = [RuntimeError("boom"), ResizeOutcome.RESIZED]
    ctl = Controller(config=config, store=InMemoryStateStore(), notifier=RecordingNotifier(), clock=FakeClock())
    ctl.monitor = monitor
    ctl.autoscaler = autoscaler

    ControllerRunner(ctl).capacity_loop()

    assert autoscaler.on_threshold_crossed.call_count == 2


def test_release_loop_polls_until_stopped() -> None:
    """The release loop polls for queued releases and exits once stopped."""
    ctl = Controller(config=_config(), store=InMemoryStateStore(), notifier=RecordingNotifier(), clock=FakeClock())
    ctl.orchestrator = MagicMock()
    runner = ControllerRunner(ctl, release_poll_seconds=10.0)
    polls: list[float] = []

    def poll() -> None:
        polls.append(ctl.clock.now())
        if len(polls) == 3:
            runner.stop()

    ctl.orchestrator.poll_requests.side_effect = poll

    runner.release_loop()

    assert polls == [0.0, 10.0, 20.0]
    ctl.orchestrator.request_rollback.assert_called_once_with("controller shutting down")
    assert ctl.orchestrator.recover.call_count == 3


def test_release_tick_finishes_rollback_left_in_flight() -> None:
    """A rollback whose traffic restore failed is completed on the next release tick."""
    ctl, _, routing = _fake_controller()
    ctl.orchestrator.bootstrap(ctl.config.release.initial_image)
    ctl.orchestrator.deployer.deploy_errors = [CollaboratorError("deploy green: InvalidParameterException")]
    request_release(ctl.store, "sequencer", "app:2")
    routing.errors = [TransientError("elb throttled")] * 3
    runner = ControllerRunner(ctl)

    runner.release_tick()

    assert load_service(ctl.store, "sequencer").state is ReleaseState.SHIFTING
    assert routing.weights == {"blue": 1.0, "green": 0.0}
    assert len(ctl.notifier.messages) == 1

    runner.release_tick()

    service = load_service(ctl.store, "sequencer")
    assert service.state is ReleaseState.IDLE
    assert service.active_revision_id == "blue"
    assert "green" not in service.revisions
    assert len(ctl.notifier.messages) == 2
    assert "rolled back" in ctl.notifier.messages[1]
