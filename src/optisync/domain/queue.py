"""Per-entity operation queues.

Each entity id owns one FIFO queue drained by its own asyncio task:

- the head operation is executed, retried and finished before the next one is
  looked at, so writes to one entity never overlap or reorder
- queues for different entity ids are independent and may have executor calls
  in flight at the same time
- a failure inside one queue's worker is logged and confined to that queue

Lifecycle decisions (status transitions, retry delays, rollback) belong to the
bound ``OperationLifecycle``; the queue only sequences calls and owns the
retry timers so they can be cancelled deterministically.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING, Protocol

from optisync.domain.backoff import RetryHandle
from optisync.domain.model import (
    ExecutionError,
    ExecutorNotConfiguredError,
    OperationStatus,
    QueueStatus,
    utcnow,
)

if TYPE_CHECKING:
    from optisync.domain.model import Clock, Operation
    from optisync.domain.ports import OperationExecutor

log = getLogger(__name__)

DEFAULT_EXECUTION_TIMEOUT_SECONDS = 30.0
DEFAULT_RETENTION = timedelta(minutes=5)


class OperationLifecycle(Protocol):
    """Receives the outcome of every executor call made by the queue."""

    def operation_started(self, operation: Operation) -> None: ...

    def operation_succeeded(self, operation: Operation) -> None: ...

    def operation_failed(self, operation: Operation, error: ExecutionError) -> float | None:
        """Record a failed attempt; return the retry delay, or ``None`` to stop."""
        ...

    def operation_abandoned(self, operation: Operation, reason: str) -> None: ...


class _SingleShotLifecycle:
    """Lifecycle used until an update manager binds itself: one attempt, no retries."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def operation_started(self, operation: Operation) -> None:
        operation.attempts += 1
        operation.last_attempt_at = self._clock()

    def operation_succeeded(self, operation: Operation) -> None:
        operation.finish(OperationStatus.CONFIRMED, now=self._clock())

    def operation_failed(self, operation: Operation, error: ExecutionError) -> float | None:
        operation.last_error = str(error)
        operation.finish(OperationStatus.FAILED, now=self._clock())
        return None

    def operation_abandoned(self, operation: Operation, reason: str) -> None:
        operation.last_error = reason
        operation.finish(OperationStatus.FAILED, now=self._clock())


class OperationQueueManager:
    """Serialises operations per entity id against an injected executor."""

    def __init__(
        self,
        *,
        execution_timeout: float | None = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Clock = utcnow,
    ) -> None:
        self._execution_timeout = execution_timeout
        self._retention = retention
        self._clock = clock
        self._executor: OperationExecutor | None = None
        self._lifecycle: OperationLifecycle = _SingleShotLifecycle(clock)
        self._queues: dict[str, deque[Operation]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._current: dict[str, Operation] = {}
        self._in_flight: set[str] = set()
        self._retries: dict[str, tuple[Operation, RetryHandle]] = {}

    def set_operation_executor(self, executor: OperationExecutor) -> None:
        self._executor = executor

    @property
    def is_configured(self) -> bool:
        return self._executor is not None

    def bind(self, lifecycle: OperationLifecycle) -> None:
        self._lifecycle = lifecycle

    def enqueue(self, operation: Operation) -> None:
        """Append ``operation`` to its entity queue and start draining if idle.

        Must be called from within the running event loop.
        """

        if self._executor is None:
            raise ExecutorNotConfiguredError(
                "No operation executor configured; call set_operation_executor() first"
            )
        queue = self._queues.setdefault(operation.entity_id, deque())
        queue.append(operation)
        log.debug(
            "Queued %s (%s) for %s, queue length %s",
            operation.id,
            operation.type,
            operation.entity_id,
            len(queue),
        )
        self._ensure_worker(operation.entity_id)

    def replace(self, old: Operation, new: Operation) -> None:
        """Put ``new`` in the slot of ``old``.

        If ``old`` is already being processed its slot cannot be reused: a
        pending retry is cancelled, an in-flight call is left to complete, and
        ``new`` is queued behind it.
        """

        queue = self._queues.get(old.entity_id)
        index = _index_of(queue, old) if queue is not None else None
        if queue is None or index is None or self._current.get(old.entity_id) is old:
            self.cancel_retry(old.id)
            self.enqueue(new)
            return
        queue[index] = new
        log.debug("Replaced queued %s with %s for %s", old.id, new.id, old.entity_id)

    def withdraw(self, operation: Operation) -> bool:
        """Remove a waiting operation; returns ``False`` if it is already being processed."""

        if self._current.get(operation.entity_id) is operation:
            self.cancel_retry(operation.id)
            return False
        queue = self._queues.get(operation.entity_id)
        index = _index_of(queue, operation) if queue is not None else None
        if queue is None or index is None:
            return False
        del queue[index]
        if not queue and operation.entity_id not in self._workers:
            del self._queues[operation.entity_id]
        return True

    def is_in_flight(self, operation: Operation) -> bool:
        """Whether the executor is currently running ``operation``."""

        return (
            self._current.get(operation.entity_id) is operation
            and operation.entity_id in self._in_flight
        )

    def cancel_retry(self, operation_id: str) -> bool:
        entry = self._retries.get(operation_id)
        if entry is None:
            return False
        _, handle = entry
        return handle.cancel()

    def get_queue_status(self) -> QueueStatus:
        queues_by_item: dict[str, int] = {}
        for entity_id, queue in self._queues.items():
            active = sum(1 for operation in queue if operation.is_active)
            if active:
                queues_by_item[entity_id] = active
        return QueueStatus(
            total_queued=sum(queues_by_item.values()),
            processing_items=len(self._in_flight),
            queues_by_item=queues_by_item,
        )

    def cleanup(self) -> None:
        """Drop empty queues, expired finished records and retry timers nobody needs."""

        now = self._clock()
        for entity_id, queue in list(self._queues.items()):
            current = self._current.get(entity_id)
            for operation in list(queue):
                if operation is current or not operation.is_finished:
                    continue
                finished_at = operation.finished_at or operation.created_at
                if now - finished_at > self._retention:
                    queue.remove(operation)
            if not queue and entity_id not in self._workers:
                del self._queues[entity_id]

        for operation, handle in list(self._retries.values()):
            if not operation.is_active and handle.cancel():
                log.debug("Cancelled retry timer of finished operation %s", operation.id)

    async def join(self) -> None:
        """Wait until every queue has drained."""

        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        """Stop all workers and timers; waiting operations are abandoned."""

        abandoned = [
            operation
            for queue in self._queues.values()
            for operation in queue
            if operation.is_active
        ]
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for _, handle in self._retries.values():
            handle.cancel()
        self._retries.clear()
        self._queues.clear()
        for operation in abandoned:
            self._lifecycle.operation_abandoned(operation, "queue closed")
        if abandoned:
            log.info("Queue closed with %s unfinished operations", len(abandoned))

    def _ensure_worker(self, entity_id: str) -> None:
        if entity_id in self._workers:
            return
        loop = asyncio.get_running_loop()
        self._workers[entity_id] = loop.create_task(
            self._drain(entity_id), name=f"optisync-queue:{entity_id}"
        )

    async def _drain(self, entity_id: str) -> None:
        queue = self._queues[entity_id]
        try:
            while queue:
                operation = queue[0]
                self._current[entity_id] = operation
                try:
                    await self._process(operation)
                except Exception:
                    log.exception("Unexpected error while processing %s", operation.id)
                finally:
                    self._current.pop(entity_id, None)
                    index = _index_of(queue, operation)
                    if index is not None:
                        del queue[index]
        finally:
            self._workers.pop(entity_id, None)
            if not queue and self._queues.get(entity_id) is queue:
                del self._queues[entity_id]

    async def _process(self, operation: Operation) -> None:
        while operation.is_active:
            error = await self._attempt(operation)
            if error is None:
                self._lifecycle.operation_succeeded(operation)
                return
            delay = self._lifecycle.operation_failed(operation, error)
            if delay is None or not operation.is_active:
                return
            log.info(
                "Retrying %s for %s in %.2fs after attempt %s",
                operation.id,
                operation.entity_id,
                delay,
                operation.attempts,
            )
            if not await self._wait_for_retry(operation, delay):
                if operation.is_active:
                    self._lifecycle.operation_abandoned(operation, "retry cancelled")
                return

    async def _wait_for_retry(self, operation: Operation, delay: float) -> bool:
        handle = RetryHandle(operation.id, delay)
        self._retries[operation.id] = (operation, handle)
        try:
            return await handle.wait()
        finally:
            entry = self._retries.get(operation.id)
            if entry is not None and entry[1] is handle:
                del self._retries[operation.id]

    async def _attempt(self, operation: Operation) -> ExecutionError | None:
        executor = self._executor
        if executor is None:
            raise ExecutorNotConfiguredError("Operation executor was removed while draining")
        self._lifecycle.operation_started(operation)
        self._in_flight.add(operation.entity_id)
        try:
            async with asyncio.timeout(self._execution_timeout):
                succeeded = await executor(operation)
        except TimeoutError:
            return ExecutionError(
                f"Executor timed out after {self._execution_timeout}s",
                operation_id=operation.id,
            )
        except Exception as exc:  # noqa: BLE001
            log.warning("Executor raised for %s: %s", operation.id, exc)
            return ExecutionError(str(exc) or type(exc).__name__, operation_id=operation.id)
        finally:
            self._in_flight.discard(operation.entity_id)
        if not succeeded:
            return ExecutionError("Executor reported failure", operation_id=operation.id)
        return None


def _index_of(queue: deque[Operation], operation: Operation) -> int | None:
    for index, queued in enumerate(queue):
        if queued is operation:
            return index
    return None
