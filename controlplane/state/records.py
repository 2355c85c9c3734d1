"""Typed load/save of Volume and ServiceRecord on top of a StateStore."""

from controlplane.models import ServiceRecord, Volume
from controlplane.state.store import StateStore, service_key, volume_key


def load_volume(store: StateStore, volume_id: str) -> Volume | None:
    record = store.get(volume_key(volume_id))
    return Volume.from_record(record) if record is not None else None


def save_volume(store: StateStore, volume: Volume) -> Volume:
    """Write ``volume`` guarded by its current version; bumps ``volume.version`` on success."""
    volume.version = store.put(volume_key(volume.id), volume.to_record(), volume.version)
    return volume


def load_service(store: StateStore, service_id: str) -> ServiceRecord | None:
    record = store.get(service_key(service_id))
    return ServiceRecord.from_record(record) if record is not None else None


def save_service(store: StateStore, service: ServiceRecord) -> ServiceRecord:
    service.version = store.put(service_key(service.id), service.to_record(), service.version)
    return service
