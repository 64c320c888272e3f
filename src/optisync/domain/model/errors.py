"""Exceptions raised by the mutation pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidIntentError(PipelineError, ValueError):
    """Raised by ``submit`` when an intent is malformed; no operation is created."""


class OperationRejectedError(InvalidIntentError):
    """Raised when an intent cannot be merged into the live operation for its entity."""

    def __init__(self, message: str, *, operation_id: str) -> None:
        super().__init__(message)
        self.operation_id = operation_id


class ExecutorNotConfiguredError(PipelineError, RuntimeError):
    """Raised when operations are enqueued before an executor was installed."""


class ExecutionError(PipelineError):
    """The executor raised or reported failure for one attempt."""

    def __init__(self, message: str, *, operation_id: str) -> None:
        super().__init__(message)
        self.operation_id = operation_id


class ExhaustionError(ExecutionError):
    """Retries ran out; the operation is terminal."""

    def __init__(self, message: str, *, operation_id: str, attempts: int) -> None:
        super().__init__(message, operation_id=operation_id)
        self.attempts = attempts
