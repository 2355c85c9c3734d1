"""Durable controller state stores."""

from controlplane.state.store import InMemoryStateStore, StateStore

__all__ = ["InMemoryStateStore", "StateStore"]
