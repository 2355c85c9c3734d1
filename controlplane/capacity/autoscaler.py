"""Grow the bound volume when utilization stays high.

Resizes are idempotent per target size, capped, and followed by a cooldown.
Threshold events that arrive during the cooldown are deferred (one per volume)
and re-evaluated against fresh utilization once it ends.
"""

from collections.abc import Callable
from enum import Enum
import logging

from controlplane.capacity.monitor import ThresholdPolicy
from controlplane.errors import InvariantViolation, SizeCapExceeded
from controlplane.models import Volume
from controlplane.shared.clock import Clock, SystemClock
from controlplane.shared.interfaces import Notifier, StorageApi
from controlplane.shared.locks import KeyedLocks
from controlplane.shared.retry import DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRIES, call_with_retry
from controlplane.state.records import load_volume, save_volume
from controlplane.state.store import StateStore

logger = logging.getLogger(__name__)

GIB = 1024**3


class ResizeOutcome(str, Enum):
    RESIZED = "resized"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    DISCARDED = "discarded"


class StorageAutoscaleController:
    def __init__(
        self,
        store: StateStore,
        storage: StorageApi,
        notifier: Notifier,
        utilization: Callable[[str], float],
        max_size_bytes: int,
        increment_bytes: int = 20 * GIB,
        cooldown_seconds: float = 15 * 60,
        policy: ThresholdPolicy | None = None,
        locks: KeyedLocks | None = None,
        clock: Clock | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.store = store
        self.storage = storage
        self.notifier = notifier
        self.utilization = utilization
        self.max_size_bytes = max_size_bytes
        self.increment_bytes = increment_bytes
        self.cooldown_seconds = cooldown_seconds
        self.policy = policy or ThresholdPolicy()
        self.locks = locks or KeyedLocks()
        self.clock = clock or SystemClock()
        self.retries = retries
        self.backoff = backoff
        self._deferred: set[str] = set()

    @property
    def deferred(self) -> set[str]:
        return set(self._deferred)

    def _load(self, volume_id: str) -> Volume:
        volume = load_volume(self.store, volume_id)
        if volume is None:
            raise InvariantViolation(f"volume {volume_id} has no record; register it first")
        return volume

    def cooldown_ends_at(self, volume: Volume) -> float | None:
        if volume.last_resized_at is None:
            return None
        return volume.last_resized_at + self.cooldown_seconds

    def _in_cooldown(self, volume: Volume) -> bool:
        ends = self.cooldown_ends_at(volume)
        return ends is not None and self.clock.now() < ends

    def on_threshold_crossed(self, volume_id: str) -> ResizeOutcome:
        """Grow ``volume_id`` by one increment unless a resize is in flight or cooling down.

        Raises:
            SizeCapExceeded: the increment would pass the configured maximum.
        """
        with self.locks.hold(volume_id):
            volume = self._load(volume_id)
            if volume.pending_size_bytes is not None:
                logger.info(
                    "volume %s resize to %d already in flight; event ignored",
                    volume_id,
                    volume.pending_size_bytes,
                )
                return ResizeOutcome.DUPLICATE
            if self._in_cooldown(volume):
                if volume.deferred_at is None:
                    volume.deferred_at = self.clock.now()
                    save_volume(self.store, volume)
                self._deferred.add(volume_id)
                logger.info(
                    "volume %s in cooldown until %.0f; threshold event deferred",
                    volume_id,
                    self.cooldown_ends_at(volume),
                )
                return ResizeOutcome.DEFERRED
            return self._resize_locked(volume, volume.effective_size_bytes + self.increment_bytes)

    def resize(self, volume_id: str, new_size_bytes: int) -> ResizeOutcome:
        """Resize to an absolute size; a target at or below the applied/in-flight size is a no-op."""
        with self.locks.hold(volume_id):
            return self._resize_locked(self._load(volume_id), new_size_bytes)

    def _resize_locked(self, volume: Volume, new_size_bytes: int) -> ResizeOutcome:
        if new_size_bytes <= volume.effective_size_bytes:
            logger.info(
                "volume %s already at or resizing to >= %d bytes; no-op",
                volume.id,
                new_size_bytes,
            )
            return ResizeOutcome.DUPLICATE
        if new_size_bytes > self.max_size_bytes:
            logger.error(
                "volume %s: resize %d -> %d exceeds maximum %d",
                volume.id,
                volume.size_bytes,
                new_size_bytes,
                self.max_size_bytes,
            )
            self.notifier.notify(
                f"Volume {volume.id} needs {new_size_bytes // GIB} GiB but the maximum is "
                f"{self.max_size_bytes // GIB} GiB; size left at {volume.size_bytes // GIB} GiB"
            )
            raise SizeCapExceeded(volume.id, new_size_bytes, self.max_size_bytes)

        volume.pending_size_bytes = new_size_bytes
        save_volume(self.store, volume)
        try:
            call_with_retry(
                f"resize {volume.id} to {new_size_bytes}",
                lambda: self.storage.resize_volume(volume.id, new_size_bytes),
                retries=self.retries,
                backoff=self.backoff,
                clock=self.clock,
            )
        except Exception as e:
            volume.pending_size_bytes = None
            save_volume(self.store, volume)
            logger.error("resize of %s failed; size left at %d: %s", volume.id, volume.size_bytes, e)
            self.notifier.notify(f"Resize of {volume.id} failed; size left at {volume.size_bytes // GIB} GiB: {e}")
            raise

        previous = volume.size_bytes
        volume.size_bytes = new_size_bytes
        volume.pending_size_bytes = None
        volume.last_resized_at = self.clock.now()
        save_volume(self.store, volume)
        logger.info("volume %s resized %d -> %d bytes", volume.id, previous, new_size_bytes)
        return ResizeOutcome.RESIZED

    def process_deferred(self) -> dict[str, ResizeOutcome]:
        """Re-evaluate deferred events whose cooldown has ended."""
        results: dict[str, ResizeOutcome] = {}
        for volume_id in sorted(self._deferred):
            with self.locks.hold(volume_id):
                volume = self._load(volume_id)
                if self._in_cooldown(volume):
                    continue
                value = self.utilization(volume_id)
                self._deferred.discard(volume_id)
                volume.deferred_at = None
                save_volume(self.store, volume)
                if self.policy.breached(value):
                    logger.info("volume %s still at %.1f after cooldown; resizing", volume_id, value)
                    results[volume_id] = self._resize_locked(
                        volume, volume.effective_size_bytes + self.increment_bytes
                    )
                else:
                    logger.info("volume %s at %.1f after cooldown; deferred event discarded", volume_id, value)
                    results[volume_id] = ResizeOutcome.DISCARDED
        return results

    def reconcile(self, volume_id: str) -> Volume:
        """Settle state left by a previous process: re-queue deferred events, finish in-flight resizes."""
        with self.locks.hold(volume_id):
            volume = self._load(volume_id)
            if volume.deferred_at is not None:
                self._deferred.add(volume_id)
            pending = volume.pending_size_bytes
            if pending is None:
                return volume
            actual = call_with_retry(
                f"get size of {volume_id}",
                lambda: self.storage.get_volume_size(volume_id),
                retries=self.retries,
                backoff=self.backoff,
                clock=self.clock,
            )
            if actual < pending:
                logger.info("volume %s: re-issuing interrupted resize to %d", volume_id, pending)
                call_with_retry(
                    f"resize {volume_id} to {pending}",
                    lambda: self.storage.resize_volume(volume_id, pending),
                    retries=self.retries,
                    backoff=self.backoff,
                    clock=self.clock,
                )
                actual = pending
            volume.size_bytes = max(volume.size_bytes, actual)
            volume.pending_size_bytes = None
            volume.last_resized_at = self.clock.now()
            save_volume(self.store, volume)
            logger.info("volume %s reconciled at %d bytes", volume_id, volume.size_bytes)
            return volume
