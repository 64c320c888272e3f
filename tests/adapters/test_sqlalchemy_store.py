from __future__ import annotations

import asyncio
import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import event, select
from sqlalchemy.engine import Engine  # noqa: TC002

from optisync.adapters.sqlalchemy import SqlAlchemyEntityStore, create_store_engine, entity_table
from optisync.app import build_pipeline
from optisync.domain.backoff import RetryPolicy
from optisync.domain.model import EntityKey, EntityKind, Intent, OperationStatus
from tests.helpers.pipeline import FAST_CONFIG
from tests.helpers.stores import wait_until

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from optisync.domain.updates import OptimisticUpdateManager

ITEM_A = EntityKey(EntityKind.ITEM, "A")
TASK_A = EntityKey(EntityKind.TASK, "A")


@pytest.mark.asyncio
async def test_set_inserts_then_updates(sqlite_engine: Engine) -> None:
    store = SqlAlchemyEntityStore(sqlite_engine)

    assert await store.set(ITEM_A, {"title": "First"})
    assert await store.set(ITEM_A, {"title": "Second", "tags": ["x"]})

    assert await store.get(ITEM_A) == {"title": "Second", "tags": ["x"]}
    with sqlite_engine.connect() as connection:
        rows = connection.execute(select(entity_table)).all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_kinds_are_separate_namespaces(sqlite_engine: Engine) -> None:
    store = SqlAlchemyEntityStore(sqlite_engine)

    await store.set(ITEM_A, {"kind": "item"})
    await store.set(TASK_A, {"kind": "task"})

    assert await store.snapshot() == {ITEM_A: {"kind": "item"}, TASK_A: {"kind": "task"}}


@pytest.mark.asyncio
async def test_delete_is_idempotent(sqlite_engine: Engine) -> None:
    store = SqlAlchemyEntityStore(sqlite_engine)
    await store.set(ITEM_A, {"title": "Gone soon"})

    assert await store.delete(ITEM_A)
    assert await store.delete(ITEM_A)
    assert await store.get(ITEM_A) is None
    assert await store.snapshot() == {}


@pytest.mark.asyncio
async def test_updated_at_is_stored_in_utc(sqlite_engine: Engine) -> None:
    stamp = datetime(2025, 3, 1, 12, 30, tzinfo=UTC)
    store = SqlAlchemyEntityStore(sqlite_engine, clock=lambda: stamp)

    await store.set(ITEM_A, {"title": "Stamped"})

    with sqlite_engine.connect() as connection:
        updated_at = connection.execute(select(entity_table.c.updated_at)).scalar_one()
    assert updated_at == stamp
    assert updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_slow_statement_is_cut_off_without_stalling_other_entities(
    tmp_path: Path,
) -> None:
    engine = create_store_engine(f"sqlite+pysqlite:///{tmp_path / 'store.db'}")
    unblock = threading.Event()

    def hold_slow_update(
        _conn: object,
        _cursor: object,
        statement: str,
        parameters: Sequence[object],
        _context: object,
        _executemany: bool,  # noqa: FBT001
    ) -> None:
        if statement.startswith("UPDATE") and "slow" in parameters:
            unblock.wait(timeout=5.0)

    event.listen(engine, "before_cursor_execute", hold_slow_update)
    store = SqlAlchemyEntityStore(engine)
    config = replace(
        FAST_CONFIG, retry=RetryPolicy(max_attempts=1), execution_timeout_seconds=0.2
    )
    try:
        async with build_pipeline(store=store, config=config) as pipeline:
            manager = pipeline.manager
            slow_id = manager.submit(
                Intent(type="add", entity_kind="item", entity_id="slow", payload={"v": 1})
            )
            fast_id = manager.submit(
                Intent(type="add", entity_kind="item", entity_id="fast", payload={"v": 2})
            )

            await wait_until(
                lambda: _status(manager, fast_id) is OperationStatus.CONFIRMED
                and _status(manager, slow_id) is OperationStatus.FAILED,
                timeout=2.0,
            )
            slow = manager.get_operation(slow_id)
            assert slow is not None
            assert "timed out" in (slow.last_error or "")
            assert await store.get(EntityKey(EntityKind.ITEM, "fast")) == {"v": 2}

            unblock.set()
            async with asyncio.timeout(2.0):
                while await store.get(EntityKey(EntityKind.ITEM, "slow")) is None:
                    await asyncio.sleep(0.01)
    finally:
        unblock.set()
        engine.dispose()


def _status(manager: OptimisticUpdateManager, operation_id: str) -> OperationStatus | None:
    operation = manager.get_operation(operation_id)
    return operation.status if operation is not None else None
