"""Ports for the authoritative entity store."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from optisync.domain.model import EntityKey, Operation, Payload


type OperationExecutor = Callable[[Operation], Awaitable[bool]]
"""Runs one operation against the store; ``False`` or an exception means failure."""


@runtime_checkable
class SnapshotSource(Protocol):
    """Supplies the authoritative state of every entity it holds."""

    async def snapshot(self) -> Mapping[EntityKey, Payload]: ...


@runtime_checkable
class EntityStore(SnapshotSource, Protocol):
    """Authoritative storage collaborator.

    Any non-success outcome is signalled by raising or returning ``False``;
    implementations never perform partial writes.
    """

    async def get(self, key: EntityKey) -> Payload | None: ...

    async def set(self, key: EntityKey, payload: Payload) -> bool: ...

    async def delete(self, key: EntityKey) -> bool: ...
