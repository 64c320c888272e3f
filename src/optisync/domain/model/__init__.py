"""Public domain model surface."""

from __future__ import annotations

from optisync.domain.model.enums import (
    DivergenceKind,
    EntityKind,
    OperationKind,
    OperationStatus,
    OverlayPolicy,
)
from optisync.domain.model.errors import (
    ExecutionError,
    ExecutorNotConfiguredError,
    ExhaustionError,
    InvalidIntentError,
    OperationRejectedError,
    PipelineError,
)
from optisync.domain.model.operation import (
    Clock,
    EntityKey,
    Intent,
    Operation,
    Payload,
    copy_payload,
    new_operation_id,
    utcnow,
)
from optisync.domain.model.reports import (
    ConsistencyReport,
    Inconsistency,
    QueueStatus,
    UpdateStats,
    ValidationStats,
)

__all__ = [
    "Clock",
    "ConsistencyReport",
    "DivergenceKind",
    "EntityKey",
    "EntityKind",
    "ExecutionError",
    "ExecutorNotConfiguredError",
    "ExhaustionError",
    "Inconsistency",
    "Intent",
    "InvalidIntentError",
    "Operation",
    "OperationKind",
    "OperationRejectedError",
    "OperationStatus",
    "OverlayPolicy",
    "Payload",
    "PipelineError",
    "QueueStatus",
    "UpdateStats",
    "ValidationStats",
    "copy_payload",
    "new_operation_id",
    "utcnow",
]
