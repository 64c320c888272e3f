"""Domain port definitions for adapters."""

from __future__ import annotations

from .storage import EntityStore, OperationExecutor, SnapshotSource

__all__ = [
    "EntityStore",
    "OperationExecutor",
    "SnapshotSource",
]
