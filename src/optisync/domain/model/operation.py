"""Mutation intents and the operation records tracked for them."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from uuid import uuid4

from .enums import EntityKind, OperationKind, OperationStatus
from .errors import InvalidIntentError

type Payload = Mapping[str, object]
type Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_operation_id() -> str:
    return f"op_{uuid4().hex}"


def copy_payload(payload: Payload | None) -> dict[str, object] | None:
    if payload is None:
        return None
    return copy.deepcopy(dict(payload))


@dataclass(frozen=True, slots=True, order=True)
class EntityKey:
    """Identity of one mutable record: its kind tag plus its id."""

    kind: EntityKind
    entity_id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.entity_id}"


@dataclass(frozen=True, slots=True, kw_only=True)
class Intent:
    """A caller's request to add, update or delete one entity.

    ``type`` and ``entity_kind`` accept their string tags. ``payload`` is the
    full new state of the entity; it is required unless the intent deletes.
    ``original_payload`` is the value to restore if the write never lands.
    """

    type: OperationKind
    entity_kind: EntityKind
    entity_id: str
    payload: Payload | None = None
    original_payload: Payload | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _coerce_tag(OperationKind, self.type, "operation type"))
        object.__setattr__(
            self, "entity_kind", _coerce_tag(EntityKind, self.entity_kind, "entity kind")
        )
        if not isinstance(self.entity_id, str) or not self.entity_id.strip():
            raise InvalidIntentError("Intent requires a non-empty entity_id")
        for name in ("payload", "original_payload"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Mapping):
                raise InvalidIntentError(f"Intent {name} must be a mapping, got {type(value)!r}")
        if self.type.leaves_entity and self.payload is None:
            raise InvalidIntentError(
                f"{self.type} intent for {self.entity_id} requires a payload"
            )

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.entity_kind, self.entity_id)


@dataclass(slots=True, kw_only=True)
class Operation:
    """Tracked mutation against one entity.

    Records are mutated in place while active (pending/retrying). Once
    confirmed, failed or merged they are kept for audit until pruned.
    """

    type: OperationKind
    entity_kind: EntityKind
    entity_id: str
    payload: dict[str, object] | None = None
    original_payload: dict[str, object] | None = None
    id: str = field(default_factory=new_operation_id)
    status: OperationStatus = OperationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    last_attempt_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    merged_into: str | None = None

    @classmethod
    def from_intent(cls, intent: Intent, *, now: datetime) -> Operation:
        return cls(
            type=intent.type,
            entity_kind=intent.entity_kind,
            entity_id=intent.entity_id,
            payload=copy_payload(intent.payload),
            original_payload=copy_payload(intent.original_payload),
            created_at=now,
            updated_at=now,
        )

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.entity_kind, self.entity_id)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal or self.status is OperationStatus.MERGED

    def finish(self, status: OperationStatus, *, now: datetime) -> None:
        self.status = status
        self.updated_at = now
        self.finished_at = now

    def snapshot(self) -> Operation:
        """Detached copy for observers; mutating it never affects the pipeline."""

        return replace(
            self,
            payload=copy_payload(self.payload),
            original_payload=copy_payload(self.original_payload),
        )


def _coerce_tag[TEnum: (OperationKind, EntityKind)](
    enum_cls: type[TEnum], value: object, label: str
) -> TEnum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidIntentError(f"Unknown {label}: {value!r}") from exc
