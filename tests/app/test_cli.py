from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from optisync.adapters.sqlalchemy import SqlAlchemyEntityStore, create_store_engine
from optisync.app import build_pipeline
from optisync.domain.model import EntityKey, EntityKind
from optisync.ui import cli
from tests.helpers.stores import InMemoryEntityStore

if TYPE_CHECKING:
    from pathlib import Path

    from optisync.app import OptimisticPipeline
    from optisync.config import HttpStoreConfig, PipelineConfig

ITEM_A = EntityKey(EntityKind.ITEM, "A")


@pytest.fixture
def database_uri(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    uri = f"sqlite+pysqlite:///{tmp_path / 'store.db'}"
    monkeypatch.setenv("DATABASE_URI", uri)
    monkeypatch.setenv("OPTISYNC_BASE_DELAY", "0")
    monkeypatch.setenv("OPTISYNC_MAX_DELAY", "0")
    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    return uri


def _stored(uri: str, key: EntityKey) -> object:
    engine = create_store_engine(uri)
    try:
        return asyncio.run(SqlAlchemyEntityStore(engine).get(key))
    finally:
        engine.dispose()


def test_put_then_delete_round_trip(database_uri: str) -> None:
    cli.main(["put", "item", "A", '{"title": "Show", "rating": 4}'])
    assert _stored(database_uri, ITEM_A) == {"title": "Show", "rating": 4}

    cli.main(["put", "item", "A", '{"title": "Show", "rating": 5}'])
    assert _stored(database_uri, ITEM_A) == {"title": "Show", "rating": 5}

    cli.main(["delete", "item", "A"])
    assert _stored(database_uri, ITEM_A) is None


def test_validate_and_status_succeed_on_an_empty_store(database_uri: str) -> None:
    cli.main(["validate", "--no-fix"])
    cli.main(["status"])


def test_invalid_payload_exits_with_usage_error(database_uri: str) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["put", "item", "A", "[1, 2]"])

    assert exc.value.code == 2


def test_invalid_configuration_exits_with_usage_error(
    database_uri: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("OPTISYNC_MAX_ATTEMPTS", "zero")

    with pytest.raises(SystemExit) as exc:
        cli.main(["status"])

    assert exc.value.code == 2


def test_unknown_kind_is_rejected_by_argparse(database_uri: str) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["put", "movie", "A", "{}"])

    assert exc.value.code == 2


def test_store_url_writes_through_the_rest_store(monkeypatch: pytest.MonkeyPatch) -> None:
    store = InMemoryEntityStore()
    base_urls: list[str] = []

    def build_rest_pipeline(
        *, store_config: HttpStoreConfig, config: PipelineConfig
    ) -> OptimisticPipeline:
        base_urls.append(store_config.base_url)
        return build_pipeline(store=store, config=config)

    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    monkeypatch.setattr(cli, "build_http_pipeline", build_rest_pipeline)

    cli.main(["--store-url", "https://store.example.test/api", "put", "item", "A", '{"v": 1}'])

    assert base_urls == ["https://store.example.test/api"]
    assert store.entities == {ITEM_A: {"v": 1}}


def test_store_url_and_database_uri_are_exclusive(database_uri: str) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--database-uri", database_uri, "--store-url", "https://x.test", "status"])

    assert exc.value.code == 2
