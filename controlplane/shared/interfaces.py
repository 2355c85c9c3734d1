"""Collaborator interfaces the controller calls; implemented in controlplane.aws and controlplane.net."""

from collections.abc import Mapping
from typing import Protocol

from controlplane.models import Instance, Revision


class ComputeApi(Protocol):
    def attach_volume(self, instance_id: str, volume_id: str) -> None: ...

    def detach_volume(self, volume_id: str) -> None: ...

    def list_instances(self, pool_id: str) -> list[Instance]: ...


class StorageApi(Protocol):
    def resize_volume(self, volume_id: str, new_size_bytes: int) -> None: ...

    def get_volume_size(self, volume_id: str) -> int: ...


class MetricsApi(Protocol):
    def sample(self, metric_name: str, resource_id: str) -> tuple[float, float]:
        """Return (value, timestamp) of the latest datapoint."""
        ...


class TrafficRoutingApi(Protocol):
    def set_weight(self, revision_id: str, weight: float) -> None:
        """Give ``revision_id`` ``weight``; the other revision receives the remainder."""
        ...

    def get_weight(self, revision_id: str) -> float: ...

    def set_weights(self, weights: Mapping[str, float]) -> None:
        """Apply weights for every revision in one routing change."""
        ...


class ReadinessApi(Protocol):
    def probe(self, revision_id: str) -> bool: ...


class Notifier(Protocol):
    def notify(self, message: str) -> None:
        """Fire-and-forget; implementations must not raise."""
        ...


class RevisionDeployer(Protocol):
    def deploy(self, revision: Revision) -> None:
        """Start ``revision.image_ref`` in the revision's slot."""
        ...

    def decommission(self, revision_id: str) -> None:
        """Scale the revision's slot to zero."""
        ...
