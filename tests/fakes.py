"""In-memory collaborators for controller tests."""

from collections.abc import Callable, Mapping
import threading

from controlplane.models import Instance, LifecycleState, Revision


class FakeClock:
    """Virtual time: sleep advances ``now`` instantly unless the cancel event is already set."""

    def __init__(self, start: float = 0.0) -> None:
        self.t = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self.t

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.t += seconds

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if cancel is not None and cancel.is_set():
            return True
        self.advance(max(seconds, 0.0))
        return False


class FakeCompute:
    def __init__(self, instances: Mapping[str, LifecycleState] | None = None) -> None:
        self.instances = dict(instances or {})
        self.attached: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []
        self.attach_errors: list[Exception] = []
        self.detach_errors: list[Exception] = []
        self.violations: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def attach_volume(self, instance_id: str, volume_id: str) -> None:
        with self._lock:
            self.calls.append(("attach", instance_id, volume_id))
            if self.attach_errors:
                raise self.attach_errors.pop(0)
            holder = self.attached.get(volume_id)
            if holder is not None and holder != instance_id:
                self.violations.append((volume_id, holder, instance_id))
            self.attached[volume_id] = instance_id

    def detach_volume(self, volume_id: str) -> None:
        with self._lock:
            self.calls.append(("detach", volume_id))
            if self.detach_errors:
                raise self.detach_errors.pop(0)
            self.attached.pop(volume_id, None)

    def list_instances(self, pool_id: str) -> list[Instance]:
        with self._lock:
            return [Instance(id=i, lifecycle_state=s) for i, s in self.instances.items()]


class FakeStorage:
    def __init__(self, sizes: Mapping[str, int] | None = None) -> None:
        self.sizes = dict(sizes or {})
        self.resize_calls: list[tuple[str, int]] = []
        self.resize_errors: list[Exception] = []

    def resize_volume(self, volume_id: str, new_size_bytes: int) -> None:
        self.resize_calls.append((volume_id, new_size_bytes))
        if self.resize_errors:
            raise self.resize_errors.pop(0)
        if new_size_bytes < self.sizes.get(volume_id, 0):
            raise AssertionError(f"shrink of {volume_id} to {new_size_bytes}")
        self.sizes[volume_id] = new_size_bytes

    def get_volume_size(self, volume_id: str) -> int:
        return self.sizes[volume_id]


class FakeMetrics:
    """Returns queued values in order; an Exception in the queue is raised instead."""

    def __init__(self, values: list[float | Exception], clock: FakeClock | None = None) -> None:
        self.values = list(values)
        self.clock = clock
        self.calls = 0

    def sample(self, metric_name: str, resource_id: str) -> tuple[float, float]:
        self.calls += 1
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value, self.clock.now() if self.clock else float(self.calls)


class FakeRouting:
    """``errors`` fail the next calls in order; ``on_set`` sees each request first and may raise."""

    def __init__(self, on_set: Callable[[Mapping[str, float]], None] | None = None) -> None:
        self.weights: dict[str, float] = {}
        self.history: list[dict[str, float]] = []
        self.errors: list[Exception] = []
        self.on_set = on_set

    def set_weights(self, weights: Mapping[str, float]) -> None:
        if self.errors:
            raise self.errors.pop(0)
        if self.on_set is not None:
            self.on_set(weights)
        assert abs(sum(weights.values()) - 1.0) < 1e-9, weights
        self.weights.update(weights)
        self.history.append(dict(weights))

    def set_weight(self, revision_id: str, weight: float) -> None:
        others = [r for r in self.weights if r != revision_id]
        self.set_weights({revision_id: weight, **{r: (1.0 - weight) / len(others) for r in others}})

    def get_weight(self, revision_id: str) -> float:
        return self.weights.get(revision_id, 0.0)


class FakeReadiness:
    """``result`` decides each probe; ``on_probe`` runs before it (used to inject operator actions)."""

    def __init__(
        self,
        result: Callable[[str], bool] = lambda _rev: True,
        on_probe: Callable[[str], None] | None = None,
    ) -> None:
        self.result = result
        self.on_probe = on_probe
        self.probes: list[str] = []

    def probe(self, revision_id: str) -> bool:
        self.probes.append(revision_id)
        if self.on_probe is not None:
            self.on_probe(revision_id)
        return self.result(revision_id)


class FakeDeployer:
    def __init__(self) -> None:
        self.deployed: list[tuple[str, str]] = []
        self.decommissioned: list[str] = []
        self.deploy_errors: list[Exception] = []

    def deploy(self, revision: Revision) -> None:
        if self.deploy_errors:
            raise self.deploy_errors.pop(0)
        self.deployed.append((revision.id, revision.image_ref))

    def decommission(self, revision_id: str) -> None:
        self.decommissioned.append(revision_id)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []
        self._lock = threading.Lock()

    def notify(self, message: str) -> None:
        with self._lock:
            self.messages.append(message)
