"""Optimistic update manager: the public submission API of the pipeline.

``submit`` is synchronous. It merges the intent into the live operation for
the entity (if any), updates the optimistic overlay so reads see the write
immediately, and hands the surviving operation to the queue. The queue reports
every executor outcome back here, where the lifecycle is decided:

- success confirms the operation, records the payload in the confirmed view
  and evicts the overlay entry
- failure schedules a retry with exponential backoff until the retry policy is
  exhausted, then fails the operation and rolls the entity back to its
  pre-chain value
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from logging import getLogger
from typing import TYPE_CHECKING

from optisync.domain.backoff import RetryPolicy
from optisync.domain.merge_policy import Absorbed, Collapsed, Merged, Rejected, merge_policy
from optisync.domain.model import (
    EntityKey,
    EntityKind,
    ExecutorNotConfiguredError,
    ExhaustionError,
    Operation,
    OperationKind,
    OperationRejectedError,
    OperationStatus,
    UpdateStats,
    copy_payload,
    utcnow,
)
from optisync.domain.overlay import OptimisticOverlay
from optisync.domain.queue import DEFAULT_RETENTION

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime, timedelta

    from optisync.domain.model import Clock, ExecutionError, Intent, Payload, QueueStatus
    from optisync.domain.queue import OperationQueueManager

log = getLogger(__name__)

type UpdateListener = Callable[[list[Operation]], None]


class OptimisticUpdateManager:
    """Tracks operations from submission to confirmation, failure or merge."""

    def __init__(
        self,
        queue: OperationQueueManager,
        *,
        overlay: OptimisticOverlay | None = None,
        retry: RetryPolicy | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Clock = utcnow,
    ) -> None:
        self._queue = queue
        self._overlay = overlay if overlay is not None else OptimisticOverlay()
        self._retry = retry or RetryPolicy()
        self._retention = retention
        self._clock = clock
        self._operations: dict[str, Operation] = {}
        self._live: dict[EntityKey, Operation] = {}
        self._confirmed: dict[EntityKey, dict[str, object]] = {}
        self._confirmed_at: dict[EntityKey, datetime] = {}
        self._listeners: list[UpdateListener] = []
        self._merged_count = 0
        self._concurrency_violations = 0
        queue.bind(self)

    @property
    def overlay(self) -> OptimisticOverlay:
        return self._overlay

    @property
    def queue(self) -> OperationQueueManager:
        return self._queue

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def concurrency_violations(self) -> int:
        return self._concurrency_violations

    def submit(self, intent: Intent) -> str:
        """Record ``intent`` and return the id of the operation created for it.

        Raises ``InvalidIntentError`` subclasses for intents that cannot be
        applied and ``ExecutorNotConfiguredError`` before the queue has an
        executor. Execution failures never surface here.
        """

        if not self._queue.is_configured:
            raise ExecutorNotConfiguredError(
                "No operation executor configured; call set_operation_executor() first"
            )
        asyncio.get_running_loop()  # raises RuntimeError outside the event loop

        record = Operation.from_intent(intent, now=self._clock())
        existing = self._live_operation(intent.key)
        if existing is None:
            self._start_chain(record)
        else:
            self._merge(existing, intent, record)
        self._notify()
        return record.id

    def get_pending_operations(self) -> list[Operation]:
        live = [operation for operation in self._live.values() if operation.is_active]
        live.sort(key=lambda operation: operation.created_at)
        return [operation.snapshot() for operation in live]

    def get_operation(self, operation_id: str) -> Operation | None:
        operation = self._operations.get(operation_id)
        return operation.snapshot() if operation is not None else None

    def get_queue_status(self) -> QueueStatus:
        return self._queue.get_queue_status()

    def get_stats(self) -> UpdateStats:
        counts = dict.fromkeys(OperationStatus, 0)
        for operation in self._operations.values():
            counts[operation.status] += 1
        return UpdateStats(
            total=len(self._operations),
            pending=counts[OperationStatus.PENDING],
            retrying=counts[OperationStatus.RETRYING],
            confirmed=counts[OperationStatus.CONFIRMED],
            failed=counts[OperationStatus.FAILED],
            merged=counts[OperationStatus.MERGED],
            merged_count=self._merged_count,
        )

    def read(self, kind: EntityKind | str, entity_id: str) -> dict[str, object] | None:
        """Current optimistic value of one entity, or ``None`` if it does not exist."""

        key = EntityKey(EntityKind(kind), entity_id)
        entry = self._overlay.get(key)
        if entry is not None:
            return None if entry.removed else copy_payload(entry.value)
        return copy_payload(self._confirmed.get(key))

    def view(self, kind: EntityKind | str) -> dict[str, dict[str, object]]:
        """Every entity of ``kind`` with optimistic writes applied over confirmed state."""

        entity_kind = EntityKind(kind)
        result: dict[str, dict[str, object]] = {}
        for key, value in self._confirmed.items():
            if key.kind is entity_kind:
                result[key.entity_id] = copy_payload(value) or {}
        for entry in self._overlay.entries():
            if entry.key.kind is not entity_kind:
                continue
            if entry.removed:
                result.pop(entry.key.entity_id, None)
            else:
                result[entry.key.entity_id] = copy_payload(entry.value) or {}
        return result

    def load_confirmed(self, entities: Mapping[EntityKey, Payload]) -> None:
        """Seed the confirmed view, typically from a store snapshot at startup."""

        for key, value in entities.items():
            self._record_confirmed(key, value)
        log.info("Loaded %s confirmed entities", len(entities))

    def confirmed_state(self) -> dict[EntityKey, dict[str, object]]:
        return {key: copy_payload(value) or {} for key, value in self._confirmed.items()}

    def has_live_operation(self, key: EntityKey) -> bool:
        return self._live_operation(key) is not None

    def confirmed_since(self, key: EntityKey, moment: datetime) -> bool:
        """Whether the confirmed value of ``key`` changed after ``moment``."""

        changed_at = self._confirmed_at.get(key)
        return changed_at is not None and changed_at > moment

    def adopt_remote(self, key: EntityKey, value: Payload | None) -> bool:
        """Make the authoritative ``value`` the local state of ``key``.

        Drops any overlay entry. Entities with a live operation are left alone
        and ``False`` is returned.
        """

        if self._live_operation(key) is not None:
            return False
        self._overlay.discard(key)
        self._record_confirmed(key, value)
        self._notify()
        return True

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: UpdateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def cleanup(self) -> None:
        """Prune finished records past the retention window and tidy the queue."""

        now = self._clock()
        expired = [
            operation_id
            for operation_id, operation in self._operations.items()
            if operation.is_finished and _age(operation, now) > self._retention
        ]
        for operation_id in expired:
            del self._operations[operation_id]
        for key, changed_at in list(self._confirmed_at.items()):
            if key not in self._confirmed and now - changed_at > self._retention:
                del self._confirmed_at[key]
        self._queue.cleanup()
        if expired:
            log.debug("Pruned %s finished operations", len(expired))

    # Queue lifecycle callbacks

    def operation_started(self, operation: Operation) -> None:
        now = self._clock()
        operation.attempts += 1
        operation.last_attempt_at = now
        operation.updated_at = now

    def operation_succeeded(self, operation: Operation) -> None:
        if operation.status is OperationStatus.MERGED:
            log.debug(
                "Superseded %s landed for %s; %s governs the entity",
                operation.id,
                operation.key,
                operation.merged_into,
            )
            return
        operation.finish(OperationStatus.CONFIRMED, now=self._clock())
        self._end_chain(operation)
        self._record_confirmed(
            operation.key, operation.payload if operation.type.leaves_entity else None
        )
        self._overlay.discard(operation.key, operation_id=operation.id)
        log.info(
            "Confirmed %s (%s %s) after %s attempt(s)",
            operation.id,
            operation.type,
            operation.key,
            operation.attempts,
        )
        self._notify()

    def operation_failed(self, operation: Operation, error: ExecutionError) -> float | None:
        operation.last_error = str(error)
        operation.updated_at = self._clock()
        if operation.status is OperationStatus.MERGED:
            log.info("Superseded %s failed for %s: %s", operation.id, operation.key, error)
            return None
        if self._retry.allows_retry(operation.attempts):
            operation.status = OperationStatus.RETRYING
            log.warning(
                "Attempt %s/%s of %s for %s failed: %s",
                operation.attempts,
                self._retry.max_attempts,
                operation.id,
                operation.key,
                error,
            )
            self._notify()
            return self._retry.next_delay(operation.attempts - 1)

        exhausted = ExhaustionError(
            f"Gave up after {operation.attempts} attempt(s): {error}",
            operation_id=operation.id,
            attempts=operation.attempts,
        )
        log.warning(
            "Operation %s for %s failed permanently: %s", operation.id, operation.key, exhausted
        )
        self._fail(operation)
        return None

    def operation_abandoned(self, operation: Operation, reason: str) -> None:
        if not operation.is_active:
            return
        operation.last_error = reason
        log.warning("Operation %s for %s abandoned: %s", operation.id, operation.key, reason)
        self._fail(operation)

    # Internals

    def _start_chain(self, record: Operation) -> None:
        if record.original_payload is None and record.type is not OperationKind.ADD:
            record.original_payload = copy_payload(self._confirmed.get(record.key))
        self._operations[record.id] = record
        self._set_live(record)
        self._apply_overlay(record)
        self._queue.enqueue(record)
        log.debug("Submitted %s (%s %s)", record.id, record.type, record.key)

    def _merge(self, existing: Operation, intent: Intent, record: Operation) -> None:
        now = self._clock()
        result = merge_policy(existing, intent, in_flight=self._queue.is_in_flight(existing))
        match result:
            case Rejected(reason=reason):
                raise OperationRejectedError(reason, operation_id=existing.id)
            case Absorbed():
                record.finish(OperationStatus.MERGED, now=now)
                record.merged_into = existing.id
                self._operations[record.id] = record
                log.debug("Absorbed %s into %s for %s", record.id, existing.id, record.key)
            case Collapsed():
                self._queue.withdraw(existing)
                existing.finish(OperationStatus.MERGED, now=now)
                existing.merged_into = record.id
                record.finish(OperationStatus.MERGED, now=now)
                self._operations[record.id] = record
                self._end_chain(existing)
                self._overlay.discard(record.key)
                log.debug("Collapsed %s and %s for %s", existing.id, record.id, record.key)
            case Merged(type=kind, payload=payload, original_payload=original):
                record.type = kind
                record.payload = copy_payload(payload)
                record.original_payload = copy_payload(original)
                existing.finish(OperationStatus.MERGED, now=now)
                existing.merged_into = record.id
                self._operations[record.id] = record
                self._set_live(record)
                self._apply_overlay(record)
                self._queue.replace(existing, record)
                log.debug("Merged %s into %s (%s %s)", existing.id, record.id, kind, record.key)
        self._merged_count += 1

    def _live_operation(self, key: EntityKey) -> Operation | None:
        live = self._live.get(key)
        if live is not None and not live.is_active:
            del self._live[key]
            return None
        return live

    def _set_live(self, record: Operation) -> None:
        previous = self._live.get(record.key)
        if previous is not None and previous is not record and previous.is_active:
            # Only one live operation per entity; fold the stray one into the new record.
            self._concurrency_violations += 1
            log.warning(
                "Concurrency violation: %s and %s both live for %s; merging",
                previous.id,
                record.id,
                record.key,
            )
            self._queue.withdraw(previous)
            previous.finish(OperationStatus.MERGED, now=self._clock())
            previous.merged_into = record.id
            if record.original_payload is None:
                record.original_payload = copy_payload(previous.original_payload)
            self._merged_count += 1
        self._live[record.key] = record

    def _record_confirmed(self, key: EntityKey, value: Payload | None) -> None:
        if value is None:
            self._confirmed.pop(key, None)
        else:
            self._confirmed[key] = copy_payload(value) or {}
        self._confirmed_at[key] = self._clock()

    def _end_chain(self, operation: Operation) -> None:
        if self._live.get(operation.key) is operation:
            del self._live[operation.key]

    def _apply_overlay(self, record: Operation) -> None:
        now = self._clock()
        if record.type.leaves_entity and record.payload is not None:
            self._overlay.put(record.key, record.payload, operation_id=record.id, now=now)
        else:
            self._overlay.mark_removed(record.key, operation_id=record.id, now=now)

    def _fail(self, operation: Operation) -> None:
        operation.finish(OperationStatus.FAILED, now=self._clock())
        self._end_chain(operation)
        self._overlay.discard(operation.key, operation_id=operation.id)
        if operation.type is not OperationKind.ADD and operation.original_payload is not None:
            self._record_confirmed(operation.key, operation.original_payload)
        log.info("Rolled back %s to its state before %s", operation.key, operation.id)
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        operations = self.get_pending_operations()
        for listener in list(self._listeners):
            try:
                listener(operations)
            except Exception:
                log.exception("Update listener %r failed", listener)


def _age(operation: Operation, now: datetime) -> timedelta:
    return now - (operation.finished_at or operation.created_at)
