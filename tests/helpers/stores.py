"""Reusable fakes for the entity store and executor seams."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from optisync.domain.backoff import RetryPolicy
from optisync.domain.model import EntityKey, EntityKind, copy_payload
from optisync.domain.queue import OperationQueueManager
from optisync.domain.updates import OptimisticUpdateManager

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from optisync.domain.model import Operation, Payload

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=0.001, max_delay_seconds=0.005)


def item(entity_id: str) -> EntityKey:
    return EntityKey(EntityKind.ITEM, entity_id)


class InMemoryEntityStore:
    """Dictionary-backed store; ``fail_writes`` makes the next N writes raise."""

    def __init__(self, entities: Mapping[EntityKey, Payload] | None = None) -> None:
        self.entities: dict[EntityKey, dict[str, object]] = {
            key: copy_payload(value) or {} for key, value in (entities or {}).items()
        }
        self.writes: list[tuple[str, EntityKey]] = []
        self.fail_writes = 0
        self.snapshot_error: Exception | None = None
        self.snapshot_calls = 0

    async def get(self, key: EntityKey) -> Payload | None:
        return copy_payload(self.entities.get(key))

    async def set(self, key: EntityKey, payload: Payload) -> bool:
        self._maybe_fail()
        self.writes.append(("set", key))
        self.entities[key] = copy_payload(payload) or {}
        return True

    async def delete(self, key: EntityKey) -> bool:
        self._maybe_fail()
        self.writes.append(("delete", key))
        self.entities.pop(key, None)
        return True

    async def snapshot(self) -> dict[EntityKey, Payload]:
        self.snapshot_calls += 1
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return {key: copy_payload(value) or {} for key, value in self.entities.items()}

    def _maybe_fail(self) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise ConnectionError("store unavailable")


class ScriptedExecutor:
    """Executor returning scripted outcomes; ``hold(entity_id)`` parks calls until released."""

    def __init__(self, *outcomes: bool | Exception, default: bool = True) -> None:
        self.calls: list[Operation] = []
        self.active: set[str] = set()
        self.max_concurrent = 0
        self.default = default
        self._outcomes: deque[bool | Exception] = deque(outcomes)
        self._gates: dict[str, asyncio.Event] = {}
        self._started: dict[str, asyncio.Event] = {}

    def hold(self, entity_id: str) -> None:
        self._gates[entity_id] = asyncio.Event()

    def release(self, entity_id: str) -> None:
        gate = self._gates.pop(entity_id, None)
        if gate is not None:
            gate.set()

    async def started(self, entity_id: str) -> None:
        await self._started.setdefault(entity_id, asyncio.Event()).wait()

    def calls_for(self, entity_id: str) -> list[Operation]:
        return [call for call in self.calls if call.entity_id == entity_id]

    async def __call__(self, operation: Operation) -> bool:
        self.calls.append(operation.snapshot())
        self.active.add(operation.entity_id)
        self.max_concurrent = max(self.max_concurrent, len(self.active))
        self._started.setdefault(operation.entity_id, asyncio.Event()).set()
        try:
            gate = self._gates.get(operation.entity_id)
            if gate is not None:
                await gate.wait()
            outcome = self._outcomes.popleft() if self._outcomes else self.default
        finally:
            self.active.discard(operation.entity_id)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def build_manager(
    executor: ScriptedExecutor | None = None,
    *,
    retry: RetryPolicy = FAST_RETRY,
    execution_timeout: float | None = 1.0,
) -> tuple[OptimisticUpdateManager, ScriptedExecutor]:
    scripted = executor or ScriptedExecutor()
    queue = OperationQueueManager(execution_timeout=execution_timeout)
    queue.set_operation_executor(scripted)
    return OptimisticUpdateManager(queue, retry=retry), scripted


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


class TickingClock:
    """Deterministic clock advancing by ``step`` on every reading."""

    def __init__(self, start: datetime | None = None, *, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2025, 1, 1, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now += delta
