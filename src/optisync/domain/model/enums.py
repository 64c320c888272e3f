"""Domain enums (pure, dependency-light)."""

from __future__ import annotations

from enum import StrEnum


class OperationKind(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def leaves_entity(self) -> bool:
        """Whether the entity exists after this kind of write lands."""

        return self is not OperationKind.DELETE


class EntityKind(StrEnum):
    """Tag for the kind of record a mutation targets."""

    ITEM = "item"
    TASK = "task"


class OperationStatus(StrEnum):
    PENDING = "pending"
    RETRYING = "retrying"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    MERGED = "merged"

    @property
    def is_active(self) -> bool:
        return self in {OperationStatus.PENDING, OperationStatus.RETRYING}

    @property
    def is_terminal(self) -> bool:
        return self in {OperationStatus.CONFIRMED, OperationStatus.FAILED}


class OverlayPolicy(StrEnum):
    """How an overlay entry without a live operation is repaired."""

    TRUST_LOCAL = "trust_local"
    TRUST_REMOTE = "trust_remote"


class DivergenceKind(StrEnum):
    ORPHANED_OVERLAY = "orphaned_overlay"
    MISSING_REMOTE = "missing_remote"
    MISSING_LOCAL = "missing_local"
    DATA_MISMATCH = "data_mismatch"
