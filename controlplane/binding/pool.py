"""Instance arena for one pool, with an explicit exclusive stateful-singleton flag."""

import logging
import threading

from controlplane.errors import InvariantViolation
from controlplane.models import Instance, LifecycleState, PoolRole
from controlplane.shared.clock import Clock
from controlplane.shared.interfaces import ComputeApi
from controlplane.shared.retry import DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRIES, call_with_retry

logger = logging.getLogger(__name__)


class InstancePool:
    """Instances known for ``pool_id``.

    Lifecycle state comes from the Compute API; ``pool_role`` is owned here and
    at most one instance may carry ``stateful-singleton``.
    """

    def __init__(
        self,
        compute: ComputeApi,
        pool_id: str,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        self.compute = compute
        self.pool_id = pool_id
        self.retries = retries
        self.backoff = backoff
        self.clock = clock
        self._lock = threading.Lock()
        self._instances: dict[str, Instance] = {}

    def refresh(self) -> list[Instance]:
        """Reload lifecycle states; instances no longer listed are marked terminated."""
        listed = call_with_retry(
            f"list instances in {self.pool_id}",
            lambda: self.compute.list_instances(self.pool_id),
            retries=self.retries,
            backoff=self.backoff,
            clock=self.clock,
        )
        with self._lock:
            seen = set()
            for inst in listed:
                seen.add(inst.id)
                known = self._instances.get(inst.id)
                if known is None:
                    self._instances[inst.id] = Instance(
                        id=inst.id,
                        pool_role=PoolRole.STATELESS_POOLED,
                        lifecycle_state=inst.lifecycle_state,
                    )
                elif known.lifecycle_state != LifecycleState.DRAINING:
                    known.lifecycle_state = inst.lifecycle_state
            for instance_id, known in self._instances.items():
                if instance_id not in seen:
                    known.lifecycle_state = LifecycleState.TERMINATED
            return list(self._instances.values())

    def get(self, instance_id: str) -> Instance | None:
        with self._lock:
            return self._instances.get(instance_id)

    def singleton(self) -> Instance | None:
        with self._lock:
            return self._singleton_locked()

    def _singleton_locked(self) -> Instance | None:
        holders = [i for i in self._instances.values() if i.pool_role == PoolRole.STATEFUL_SINGLETON]
        if len(holders) > 1:
            raise InvariantViolation(
                f"pool {self.pool_id} has {len(holders)} stateful singletons: "
                + ", ".join(sorted(i.id for i in holders))
            )
        return holders[0] if holders else None

    def claim_singleton(self, instance_id: str) -> Instance:
        """Mark ``instance_id`` as the stateful singleton; refuses if another instance holds it."""
        with self._lock:
            holder = self._singleton_locked()
            if holder is not None and holder.id != instance_id:
                raise InvariantViolation(
                    f"instance {holder.id} already holds the stateful role in pool {self.pool_id}; "
                    f"refusing {instance_id}"
                )
            instance = self._instances.setdefault(instance_id, Instance(id=instance_id))
            instance.pool_role = PoolRole.STATEFUL_SINGLETON
            return instance

    def release_singleton(self, instance_id: str) -> None:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is not None:
                instance.pool_role = PoolRole.STATELESS_POOLED

    def mark_draining(self, instance_id: str) -> None:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is not None:
                instance.lifecycle_state = LifecycleState.DRAINING
                logger.info("instance %s draining", instance_id)
