from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.engine import Engine  # noqa: TC002

from optisync.adapters.sqlalchemy import create_all_tables, create_store_engine
from tests.helpers.stores import InMemoryEntityStore, ScriptedExecutor, build_manager

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Iterator

    from optisync.domain.updates import OptimisticUpdateManager


@pytest.fixture(autouse=True)
def _isolate_pipeline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("OPTISYNC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_store_engine("sqlite+pysqlite:///:memory:")
    create_all_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def manager(executor: ScriptedExecutor) -> OptimisticUpdateManager:
    update_manager, _ = build_manager(executor)
    return update_manager


@pytest.fixture
def memory_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()
