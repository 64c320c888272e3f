"""Application composition: one pipeline context per application instance."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from optisync.adapters.http import HttpEntityStore
from optisync.adapters.sqlalchemy import SqlAlchemyEntityStore, create_store_engine
from optisync.config import get_database_config, get_http_store_config, get_pipeline_config
from optisync.domain.consistency import DataConsistencyValidator
from optisync.domain.model import OperationKind, utcnow
from optisync.domain.overlay import OptimisticOverlay
from optisync.domain.queue import OperationQueueManager
from optisync.domain.updates import OptimisticUpdateManager
from optisync.scheduling import (
    start_periodic_cleanup,
    start_periodic_validation,
    stop_periodic_cleanup,
    stop_periodic_validation,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    import httpx
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from optisync.config import HttpStoreConfig, PipelineConfig
    from optisync.domain.model import Clock, Operation
    from optisync.domain.ports import EntityStore, OperationExecutor, SnapshotSource

log = getLogger(__name__)


def store_executor(store: EntityStore) -> OperationExecutor:
    """Adapt ``store`` to the queue's executor contract."""

    async def execute(operation: Operation) -> bool:
        if operation.type is OperationKind.DELETE:
            return await store.delete(operation.key)
        if operation.payload is None:
            log.warning("%s for %s has no payload to write", operation.id, operation.key)
            return False
        return await store.set(operation.key, operation.payload)

    return execute


@dataclass(slots=True)
class OptimisticPipeline:
    """Everything one application instance needs, wired together."""

    queue: OperationQueueManager
    manager: OptimisticUpdateManager
    validator: DataConsistencyValidator
    store: EntityStore | None = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    @property
    def overlay(self) -> OptimisticOverlay:
        return self.manager.overlay

    async def load_confirmed(self) -> int:
        """Seed the confirmed view from the store's current snapshot."""

        if self.store is None:
            raise RuntimeError("Pipeline has no store to load confirmed state from")
        snapshot = await self.store.snapshot()
        self.manager.load_confirmed(snapshot)
        return len(snapshot)

    def start_periodic_validation(self, scheduler: AsyncIOScheduler) -> None:
        start_periodic_validation(scheduler, self.validator)
        start_periodic_cleanup(scheduler, self.manager)

    def stop_periodic_validation(self, scheduler: AsyncIOScheduler) -> None:
        stop_periodic_validation(scheduler)
        stop_periodic_cleanup(scheduler)

    async def aclose(self) -> None:
        await self.queue.close()
        for closer in self.closers:
            await closer()

    async def __aenter__(self) -> OptimisticPipeline:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


def build_pipeline(
    *,
    store: EntityStore | None = None,
    executor: OperationExecutor | None = None,
    snapshot_source: SnapshotSource | None = None,
    config: PipelineConfig | None = None,
    clock: Clock = utcnow,
) -> OptimisticPipeline:
    """Wire queue, update manager and validator around one store.

    ``executor`` and ``snapshot_source`` default to the store; at least one
    source for each is required.
    """

    settings = config or get_pipeline_config()
    effective_executor = executor or (store_executor(store) if store is not None else None)
    effective_source = snapshot_source or store
    if effective_executor is None or effective_source is None:
        raise ValueError("build_pipeline needs a store, or both an executor and a snapshot source")

    queue = OperationQueueManager(
        execution_timeout=settings.execution_timeout_seconds,
        retention=settings.retention,
        clock=clock,
    )
    queue.set_operation_executor(effective_executor)
    manager = OptimisticUpdateManager(
        queue,
        overlay=OptimisticOverlay(),
        retry=settings.retry,
        retention=settings.retention,
        clock=clock,
    )
    validator = DataConsistencyValidator(
        manager, effective_source, settings=settings.validation, clock=clock
    )
    log.debug(
        "Built pipeline: max_attempts=%s, timeout=%ss, overlay_policy=%s",
        settings.retry.max_attempts,
        settings.execution_timeout_seconds,
        settings.validation.overlay_policy,
    )
    return OptimisticPipeline(queue=queue, manager=manager, validator=validator, store=store)


def build_sqlite_pipeline(
    *,
    database_uri: str | None = None,
    config: PipelineConfig | None = None,
) -> OptimisticPipeline:
    """Pipeline over the SQLAlchemy store at ``database_uri`` (or the configured database)."""

    uri = database_uri or get_database_config().uri
    engine = create_store_engine(uri)
    log.info("Using entity store at %s", engine.url.render_as_string(hide_password=True))
    return build_pipeline(store=SqlAlchemyEntityStore(engine), config=config)


def build_http_pipeline(
    *,
    store_config: HttpStoreConfig | None = None,
    config: PipelineConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OptimisticPipeline:
    """Pipeline over the REST store (``OPTISYNC_STORE_URL`` unless ``store_config`` is given).

    Closing the pipeline also closes the store's HTTP client.
    """

    resolved = store_config or get_http_store_config()
    store = HttpEntityStore(resolved, transport=transport)
    log.info("Using entity store at %s", resolved.base_url)
    pipeline = build_pipeline(store=store, config=config)
    pipeline.closers.append(store.aclose)
    return pipeline
