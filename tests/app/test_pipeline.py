from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.engine import Engine  # noqa: TC002

from optisync.adapters.sqlalchemy import SqlAlchemyEntityStore
from optisync.app import build_http_pipeline, build_pipeline, store_executor
from optisync.config import HttpStoreConfig, MissingConfigurationError
from optisync.domain.model import (
    EntityKey,
    EntityKind,
    Intent,
    Operation,
    OperationKind,
    OperationStatus,
)
from tests.helpers.pipeline import FAST_CONFIG
from tests.helpers.stores import InMemoryEntityStore, item


@pytest.mark.asyncio
async def test_store_executor_maps_operation_kinds(memory_store: InMemoryEntityStore) -> None:
    execute = store_executor(memory_store)

    added = Operation(
        type=OperationKind.ADD, entity_kind=EntityKind.ITEM, entity_id="A", payload={"v": 1}
    )
    removed = Operation(type=OperationKind.DELETE, entity_kind=EntityKind.ITEM, entity_id="A")

    assert await execute(added)
    assert memory_store.entities == {item("A"): {"v": 1}}
    assert await execute(removed)
    assert memory_store.writes == [("set", item("A")), ("delete", item("A"))]


def test_build_pipeline_requires_a_store_or_both_seams() -> None:
    with pytest.raises(ValueError, match="store"):
        build_pipeline(config=FAST_CONFIG)


@pytest.mark.asyncio
async def test_pipeline_applies_config_and_shares_one_overlay(
    memory_store: InMemoryEntityStore,
) -> None:
    async with build_pipeline(store=memory_store, config=FAST_CONFIG) as pipeline:
        assert pipeline.manager.retry_policy.max_attempts == 2
        assert pipeline.validator.settings.interval == timedelta(seconds=5)
        assert pipeline.overlay is pipeline.manager.overlay
        assert pipeline.queue.is_configured


@pytest.mark.asyncio
async def test_store_failures_roll_back_after_retries(memory_store: InMemoryEntityStore) -> None:
    memory_store.entities[item("A")] = {"rating": 3}
    memory_store.fail_writes = 2

    async with build_pipeline(store=memory_store, config=FAST_CONFIG) as pipeline:
        await pipeline.load_confirmed()
        operation_id = pipeline.manager.submit(
            Intent(
                type=OperationKind.UPDATE,
                entity_kind=EntityKind.ITEM,
                entity_id="A",
                payload={"rating": 5},
            )
        )
        await pipeline.queue.join()

        operation = pipeline.manager.get_operation(operation_id)
        assert operation is not None
        assert operation.status is OperationStatus.FAILED
        assert operation.last_error == "store unavailable"
        assert pipeline.manager.read(EntityKind.ITEM, "A") == {"rating": 3}
        assert memory_store.entities[item("A")] == {"rating": 3}


@pytest.mark.asyncio
async def test_http_pipeline_writes_through_the_rest_store_and_closes_its_client() -> None:
    requests: list[tuple[str, str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        requests.append((request.method, request.url.path, body))
        return httpx.Response(200, json={})

    store_config = HttpStoreConfig(base_url="https://store.example.test/api/", ratelimit=None)
    pipeline = build_http_pipeline(
        store_config=store_config, config=FAST_CONFIG, transport=httpx.MockTransport(handler)
    )
    async with pipeline:
        pipeline.manager.submit(
            Intent(type="add", entity_kind="task", entity_id="T1", payload={"cron": "@daily"})
        )
        await pipeline.queue.join()

    assert requests == [("PUT", "/api/entities/task/T1", {"payload": {"cron": "@daily"}})]
    assert pipeline.store is not None
    with pytest.raises(RuntimeError):
        await pipeline.store.get(EntityKey(EntityKind.TASK, "T1"))


def test_http_pipeline_requires_a_store_url() -> None:
    with pytest.raises(MissingConfigurationError):
        build_http_pipeline(config=FAST_CONFIG)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sqlite_round_trip_with_external_change(sqlite_engine: Engine) -> None:
    store = SqlAlchemyEntityStore(sqlite_engine, create_tables=False)

    async with build_pipeline(store=store, config=FAST_CONFIG) as pipeline:
        for index in range(3):
            pipeline.manager.submit(
                Intent(
                    type=OperationKind.ADD,
                    entity_kind=EntityKind.ITEM,
                    entity_id=f"show-{index}",
                    payload={"watched_episodes": 0},
                )
            )
        for episode in range(1, 4):
            pipeline.manager.submit(
                Intent(
                    type=OperationKind.UPDATE,
                    entity_kind=EntityKind.ITEM,
                    entity_id="show-0",
                    payload={"watched_episodes": episode},
                )
            )
        await pipeline.queue.join()

        assert await store.get(EntityKey(EntityKind.ITEM, "show-0")) == {"watched_episodes": 3}
        assert len(pipeline.manager.view(EntityKind.ITEM)) == 3

        await store.delete(EntityKey(EntityKind.ITEM, "show-2"))
        report = await pipeline.validator.validate_consistency()

        assert report.entity_ids() == ["show-2"]
        assert pipeline.manager.read(EntityKind.ITEM, "show-2") is None
        again = await pipeline.validator.validate_consistency()
        assert again.is_consistent
