"""In-memory optimistic view of entities with unconfirmed writes."""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING

from optisync.domain.model import copy_payload

if TYPE_CHECKING:
    from datetime import datetime

    from optisync.domain.model import EntityKey, Payload

log = getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OverlayEntry:
    """Latest optimistic value for one entity.

    ``removed`` entries shadow the confirmed value so reads report the entity
    as gone. ``operation_id`` names the operation whose outcome governs the entry.
    """

    key: EntityKey
    value: Payload | None
    removed: bool
    operation_id: str
    updated_at: datetime


class OptimisticOverlay:
    """Entity key to latest optimistic value.

    Only the update manager writes here; everything else reads.
    """

    def __init__(self) -> None:
        self._entries: dict[EntityKey, OverlayEntry] = {}

    def put(self, key: EntityKey, value: Payload, *, operation_id: str, now: datetime) -> None:
        self._entries[key] = OverlayEntry(
            key=key,
            value=copy_payload(value),
            removed=False,
            operation_id=operation_id,
            updated_at=now,
        )

    def mark_removed(self, key: EntityKey, *, operation_id: str, now: datetime) -> None:
        self._entries[key] = OverlayEntry(
            key=key,
            value=None,
            removed=True,
            operation_id=operation_id,
            updated_at=now,
        )

    def get(self, key: EntityKey) -> OverlayEntry | None:
        return self._entries.get(key)

    def discard(self, key: EntityKey, *, operation_id: str | None = None) -> OverlayEntry | None:
        """Drop the entry for ``key``.

        With ``operation_id`` the entry is only dropped while that operation
        still governs it; a newer write keeps its entry.
        """

        entry = self._entries.get(key)
        if entry is None:
            return None
        if operation_id is not None and entry.operation_id != operation_id:
            log.debug(
                "Keeping overlay entry for %s: governed by %s, not %s",
                key,
                entry.operation_id,
                operation_id,
            )
            return None
        del self._entries[key]
        return entry

    def entries(self) -> list[OverlayEntry]:
        return list(self._entries.values())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
