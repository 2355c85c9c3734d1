"""Single-writer attachment between the durable volume and one running instance."""

import logging

from controlplane.binding.pool import InstancePool
from controlplane.errors import (
    AlreadyBound,
    FatalError,
    InstanceNotRunning,
    InvariantViolation,
    StaleWriteError,
)
from controlplane.models import LifecycleState, Volume
from controlplane.shared.clock import Clock
from controlplane.shared.interfaces import ComputeApi, Notifier
from controlplane.shared.locks import KeyedLocks
from controlplane.shared.retry import DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRIES, call_with_retry
from controlplane.state.records import load_volume, save_volume
from controlplane.state.store import StateStore

logger = logging.getLogger(__name__)


class VolumeBindingManager:
    """Owns ``Volume.attached_instance_id``.

    Every bind/unbind holds the volume's lock from ``locks`` (shared with the
    autoscaler). The attach side effect runs before the record is written, so a
    failed attach leaves the volume unbound. The manager never unbinds on its own.
    """

    def __init__(
        self,
        store: StateStore,
        compute: ComputeApi,
        pool: InstancePool,
        notifier: Notifier,
        locks: KeyedLocks | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.compute = compute
        self.pool = pool
        self.notifier = notifier
        self.locks = locks or KeyedLocks()
        self.retries = retries
        self.backoff = backoff
        self.clock = clock

    def register(self, volume_id: str, size_bytes: int) -> Volume:
        """Create the volume record on first start; existing records are returned unchanged.

        A record that names a holder re-establishes that holder's stateful role
        in the pool (controller restart).
        """
        with self.locks.hold(volume_id):
            volume = load_volume(self.store, volume_id)
            if volume is None:
                volume = save_volume(self.store, Volume(id=volume_id, size_bytes=size_bytes))
                logger.info("registered volume %s (%d bytes)", volume_id, size_bytes)
            elif volume.attached_instance_id:
                self.pool.claim_singleton(volume.attached_instance_id)
            return volume

    def get(self, volume_id: str) -> Volume:
        volume = load_volume(self.store, volume_id)
        if volume is None:
            raise InvariantViolation(f"volume {volume_id} has no record; register it first")
        return volume

    def bind(self, volume_id: str, instance_id: str) -> None:
        """Attach ``volume_id`` to ``instance_id``.

        Raises:
            AlreadyBound: volume is attached to a different instance.
            InstanceNotRunning: instance is unknown to the pool or not running.
            InvariantViolation: another instance already holds the stateful role.
            RetryBudgetExhausted: the attach call kept failing.
        """
        with self.locks.hold(volume_id):
            volume = self.get(volume_id)
            holder = volume.attached_instance_id
            if holder == instance_id:
                logger.info("volume %s already bound to %s", volume_id, instance_id)
                return
            if holder is not None:
                logger.error(
                    "bind conflict: volume=%s holder=%s requester=%s version=%d",
                    volume_id,
                    holder,
                    instance_id,
                    volume.version,
                )
                self.notifier.notify(
                    f"Bind conflict on volume {volume_id}: held by {holder}, "
                    f"refused bind to {instance_id}"
                )
                raise AlreadyBound(volume_id, holder, instance_id)

            instance = self.pool.get(instance_id)
            if instance is None:
                self.pool.refresh()
                instance = self.pool.get(instance_id)
            if instance is None or instance.lifecycle_state != LifecycleState.RUNNING:
                state = instance.lifecycle_state.value if instance else "unknown"
                raise InstanceNotRunning(f"instance {instance_id} is {state}; cannot bind {volume_id}")

            singleton = self.pool.singleton()
            if singleton is not None and singleton.id != instance_id:
                logger.error(
                    "invariant violation: volume=%s unbound but %s holds the stateful role; requester=%s",
                    volume_id,
                    singleton.id,
                    instance_id,
                )
                self.notifier.notify(
                    f"Invariant violation: {singleton.id} holds the stateful role while "
                    f"{volume_id} is unbound; refused bind to {instance_id}"
                )
                raise InvariantViolation(
                    f"{singleton.id} holds the stateful role; refusing bind of {volume_id} to {instance_id}"
                )

            try:
                call_with_retry(
                    f"attach {volume_id} to {instance_id}",
                    lambda: self.compute.attach_volume(instance_id, volume_id),
                    retries=self.retries,
                    backoff=self.backoff,
                    clock=self.clock,
                )
            except FatalError as e:
                logger.error("attach of %s to %s failed; volume left unbound: %s", volume_id, instance_id, e)
                self.notifier.notify(f"Attach of {volume_id} to {instance_id} failed: {e}")
                raise

            volume.attached_instance_id = instance_id
            try:
                save_volume(self.store, volume)
            except StaleWriteError:
                logger.error("volume %s record changed during bind; detaching from %s", volume_id, instance_id)
                self.compute.detach_volume(volume_id)
                raise
            self.pool.claim_singleton(instance_id)
            logger.info("volume %s bound to %s", volume_id, instance_id)

    def unbind(self, volume_id: str) -> None:
        """Detach ``volume_id`` from whichever instance holds it and clear the holder.

        Used for planned instance replacement only.
        """
        with self.locks.hold(volume_id):
            volume = self.get(volume_id)
            holder = volume.attached_instance_id
            if holder is None:
                logger.info("volume %s already unbound", volume_id)
                return
            try:
                call_with_retry(
                    f"detach {volume_id}",
                    lambda: self.compute.detach_volume(volume_id),
                    retries=self.retries,
                    backoff=self.backoff,
                    clock=self.clock,
                )
            except FatalError as e:
                logger.error("detach of %s from %s failed; binding kept: %s", volume_id, holder, e)
                self.notifier.notify(f"Detach of {volume_id} from {holder} failed: {e}")
                raise
            volume.attached_instance_id = None
            try:
                save_volume(self.store, volume)
            except StaleWriteError:
                logger.warning(
                    "volume %s record changed during unbind; clearing %s on the current record", volume_id, holder
                )
                volume = self.get(volume_id)
                if volume.attached_instance_id != holder:
                    message = (
                        f"volume {volume_id} was detached from {holder} but its record now names "
                        f"{volume.attached_instance_id}"
                    )
                    self.notifier.notify(f"Invariant violation: {message}")
                    raise InvariantViolation(message)
                volume.attached_instance_id = None
                save_volume(self.store, volume)
            self.pool.release_singleton(holder)
            logger.info("volume %s unbound from %s", volume_id, holder)

    def hand_over(self, volume_id: str, new_instance_id: str) -> None:
        """Planned replacement: drain the current holder, unbind, bind the replacement."""
        with self.locks.hold(volume_id):
            holder = self.get(volume_id).attached_instance_id
            if holder == new_instance_id:
                return
            if holder is not None:
                self.pool.mark_draining(holder)
                self.unbind(volume_id)
            self.bind(volume_id, new_instance_id)
