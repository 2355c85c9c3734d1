"""Versioned key-value store for Volume and ServiceRecord records."""

import copy
import threading
from typing import Any, Protocol

from controlplane.errors import StaleWriteError


class StateStore(Protocol):
    """Records are dicts with an ``id`` and a ``version``.

    ``put`` succeeds only if the stored version still equals ``expected_version``
    (0 for a record that must not exist yet) and returns the new version.
    """

    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, record: dict[str, Any], expected_version: int) -> int: ...


def volume_key(volume_id: str) -> str:
    return f"volume/{volume_id}"


def service_key(service_id: str) -> str:
    return f"service/{service_id}"


class InMemoryStateStore:
    """Process-local store; used in tests and for dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: dict[str, Any], expected_version: int) -> int:
        with self._lock:
            current = self._records.get(key)
            actual = current["version"] if current is not None else None
            if (actual or 0) != expected_version:
                raise StaleWriteError(key, expected_version, actual)
            new_version = expected_version + 1
            stored = copy.deepcopy(record)
            stored["version"] = new_version
            self._records[key] = stored
            return new_version

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)
