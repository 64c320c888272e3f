"""Merge policy for intents that hit an entity with a live operation.

The policy is a pure function of the live operation and the incoming intent.
It reasons about the chain of writes from its first record:

- ``original_payload`` always comes from the first record of the chain, so a
  rollback restores the pre-chain state rather than an intermediate one
- whether the entity existed before the chain and whether it exists after the
  incoming intent decides the kind of the surviving write
- while the live operation is in flight its write is about to land, so the
  surviving write is computed against the state that call produces

Deleting an unconfirmed delete and then re-adding the entity reuses the entity
id: the chain becomes an update of the pre-chain value, and is a no-op only when
the re-added payload equals that value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from optisync.domain.model import OperationKind

if TYPE_CHECKING:
    from optisync.domain.model import Intent, Operation, Payload


@dataclass(frozen=True, slots=True)
class Merged:
    """The chain survives as one write of ``type``."""

    type: OperationKind
    payload: Payload | None
    original_payload: Payload | None


@dataclass(frozen=True, slots=True)
class Collapsed:
    """The chain cancels out; nothing reaches the store."""


@dataclass(frozen=True, slots=True)
class Absorbed:
    """The incoming intent adds nothing; the live operation stays as is."""


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: str


type MergeResult = Merged | Collapsed | Absorbed | Rejected


def merge_policy(existing: Operation, incoming: Intent, *, in_flight: bool = False) -> MergeResult:
    """Combine ``incoming`` with the live operation ``existing`` for the same entity."""

    add, update, delete = OperationKind.ADD, OperationKind.UPDATE, OperationKind.DELETE
    original = existing.original_payload

    match (existing.type, incoming.type):
        case (OperationKind.ADD, OperationKind.ADD | OperationKind.UPDATE):
            return Merged(update if in_flight else add, incoming.payload, original)
        case (OperationKind.ADD, OperationKind.DELETE):
            if in_flight:
                return Merged(delete, incoming.payload or existing.payload, original)
            return Collapsed()
        case (OperationKind.UPDATE, OperationKind.UPDATE):
            return Merged(update, incoming.payload, original)
        case (OperationKind.UPDATE, OperationKind.DELETE):
            return Merged(delete, incoming.payload or existing.payload, original)
        case (OperationKind.UPDATE, OperationKind.ADD):
            return Rejected(f"{existing.entity_id} already exists; submit an update instead")
        case (OperationKind.DELETE, OperationKind.ADD):
            if in_flight:
                return Merged(add, incoming.payload, original)
            if original is not None and _same_payload(incoming.payload, original):
                return Collapsed()
            return Merged(update, incoming.payload, original)
        case (OperationKind.DELETE, OperationKind.DELETE):
            return Absorbed()
        case (OperationKind.DELETE, OperationKind.UPDATE):
            return Rejected(f"{existing.entity_id} is pending deletion")
        case _:
            raise ValueError(f"Unsupported merge: {existing.type} followed by {incoming.type}")


def _same_payload(left: Payload | None, right: Payload | None) -> bool:
    if left is None or right is None:
        return left is right
    return dict(left) == dict(right)
