"""Controller records: instances, volumes, revisions, release attempts.

Volume and ServiceRecord are persisted through the state store; they carry a
``version`` that the store bumps on every successful write.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PoolRole(str, Enum):
    STATEFUL_SINGLETON = "stateful-singleton"
    STATELESS_POOLED = "stateless-pooled"


class LifecycleState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ReleaseState(str, Enum):
    """Release state machine; ``idle`` is the resting state between attempts."""

    IDLE = "idle"
    SHIFTING = "shifting"
    MONITORING = "monitoring"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"

    @property
    def in_flight(self) -> bool:
        return self in (ReleaseState.SHIFTING, ReleaseState.MONITORING)

    @property
    def terminal(self) -> bool:
        return self in (ReleaseState.COMMITTED, ReleaseState.ROLLED_BACK)


@dataclass
class Instance:
    id: str
    pool_role: PoolRole = PoolRole.STATELESS_POOLED
    lifecycle_state: LifecycleState = LifecycleState.PENDING


@dataclass
class Volume:
    id: str
    size_bytes: int
    attached_instance_id: str | None = None
    pending_size_bytes: int | None = None
    last_resized_at: float | None = None
    deferred_at: float | None = None
    version: int = 0

    @property
    def effective_size_bytes(self) -> int:
        """Largest size applied or requested; resize requests at or below it are duplicates."""
        return max(self.size_bytes, self.pending_size_bytes or 0)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": "bound" if self.attached_instance_id else "unbound",
            "size_bytes": self.size_bytes,
            "attached_instance_id": self.attached_instance_id,
            "pending_size_bytes": self.pending_size_bytes,
            "last_resized_at": self.last_resized_at,
            "deferred_at": self.deferred_at,
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Volume":
        return cls(
            id=record["id"],
            size_bytes=int(record["size_bytes"]),
            attached_instance_id=record.get("attached_instance_id"),
            pending_size_bytes=_optional_int(record.get("pending_size_bytes")),
            last_resized_at=_optional_float(record.get("last_resized_at")),
            deferred_at=_optional_float(record.get("deferred_at")),
            version=int(record.get("version", 0)),
        )


@dataclass(frozen=True)
class UtilizationSample:
    volume_id: str
    metric_value: float
    timestamp: float


@dataclass(frozen=True)
class ThresholdCrossed:
    volume_id: str
    sample: UtilizationSample


@dataclass
class Revision:
    id: str
    image_ref: str
    traffic_weight: float = 0.0
    health_state: HealthState = HealthState.UNKNOWN

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "image_ref": self.image_ref,
            "traffic_weight": self.traffic_weight,
            "health_state": self.health_state.value,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Revision":
        return cls(
            id=record["id"],
            image_ref=record["image_ref"],
            traffic_weight=float(record.get("traffic_weight", 0.0)),
            health_state=HealthState(record.get("health_state", HealthState.UNKNOWN.value)),
        )


@dataclass
class ReleaseAttempt:
    candidate_revision_id: str
    started_at: float
    state: ReleaseState = ReleaseState.SHIFTING
    rollback_requested: bool = False
    reason: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "candidate_revision_id": self.candidate_revision_id,
            "started_at": self.started_at,
            "state": self.state.value,
            "rollback_requested": self.rollback_requested,
            "reason": self.reason,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ReleaseAttempt":
        return cls(
            candidate_revision_id=record["candidate_revision_id"],
            started_at=float(record["started_at"]),
            state=ReleaseState(record["state"]),
            rollback_requested=bool(record.get("rollback_requested", False)),
            reason=record.get("reason", ""),
        )


@dataclass
class ServiceRecord:
    """Persisted release state for one service: its two revision slots and the current attempt."""

    id: str
    active_revision_id: str
    revisions: dict[str, Revision] = field(default_factory=dict)
    attempt: ReleaseAttempt | None = None
    requested_image: str | None = None
    version: int = 0

    @property
    def state(self) -> ReleaseState:
        if self.attempt is None or self.attempt.state.terminal:
            return ReleaseState.IDLE
        return self.attempt.state

    @property
    def active(self) -> Revision:
        return self.revisions[self.active_revision_id]

    def weights(self) -> dict[str, float]:
        return {rid: rev.traffic_weight for rid, rev in self.revisions.items()}

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "active_revision_id": self.active_revision_id,
            "revisions": {rid: rev.to_record() for rid, rev in self.revisions.items()},
            "attempt": self.attempt.to_record() if self.attempt else None,
            "requested_image": self.requested_image,
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ServiceRecord":
        attempt = record.get("attempt")
        return cls(
            id=record["id"],
            active_revision_id=record["active_revision_id"],
            revisions={
                rid: Revision.from_record(rev) for rid, rev in (record.get("revisions") or {}).items()
            },
            attempt=ReleaseAttempt.from_record(attempt) if attempt else None,
            requested_image=record.get("requested_image"),
            version=int(record.get("version", 0)),
        )


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)
