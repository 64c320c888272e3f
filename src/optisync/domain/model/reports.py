"""Read models handed to observers: queue status, statistics and consistency reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from .enums import DivergenceKind
    from .operation import EntityKey


@dataclass(frozen=True, slots=True)
class QueueStatus:
    total_queued: int
    processing_items: int
    queues_by_item: Mapping[str, int] = field(default_factory=dict[str, int])


@dataclass(frozen=True, slots=True)
class UpdateStats:
    total: int
    pending: int
    retrying: int
    confirmed: int
    failed: int
    merged: int
    merged_count: int


@dataclass(frozen=True, slots=True, kw_only=True)
class Inconsistency:
    """One divergence between local and authoritative state."""

    key: EntityKey
    kind: DivergenceKind
    description: str
    local: Mapping[str, object] | None = None
    remote: Mapping[str, object] | None = None
    conflict_fields: tuple[str, ...] = ()

    @property
    def entity_id(self) -> str:
        return self.key.entity_id


@dataclass(frozen=True, slots=True, kw_only=True)
class ConsistencyReport:
    timestamp: datetime
    total_checked: int = 0
    inconsistent_items: tuple[Inconsistency, ...] = ()
    fixed_count: int = 0
    errors: tuple[str, ...] = ()
    snapshot_available: bool = True

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistent_items

    def entity_ids(self) -> list[str]:
        return [item.entity_id for item in self.inconsistent_items]


@dataclass(frozen=True, slots=True)
class ValidationStats:
    total_validations: int
    average_inconsistencies: float
    total_fixed: int
    last_validation_time: datetime | None
    is_validating: bool
    store_healthy: bool
