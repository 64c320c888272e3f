"""Entity store persisted in a relational database through SQLAlchemy."""

from __future__ import annotations

import asyncio
import threading
from contextlib import nullcontext
from logging import getLogger
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, delete, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from optisync.domain.model import EntityKey, EntityKind, copy_payload, utcnow

from .mappings import create_all_tables, entity_table

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

    from sqlalchemy import ColumnElement
    from sqlalchemy.engine import Engine

    from optisync.domain.model import Clock, Payload

log = getLogger(__name__)


def create_store_engine(database_uri: str) -> Engine:
    """Engine for ``database_uri`` that can be used from worker threads.

    An in-memory SQLite database lives in a single connection, so every thread
    must share it.
    """

    url = make_url(database_uri)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return create_engine(
            url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(url, future=True)


class SqlAlchemyEntityStore:
    """Authoritative store over the ``entities`` table.

    Each call runs in its own short transaction on a worker thread, so a slow
    statement never holds up the event loop and the caller's timeout can cut
    the wait short. Engines backed by a single shared connection are used by
    one thread at a time.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        create_tables: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = engine
        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine, expire_on_commit=False
        )
        self._clock = clock
        self._guard: AbstractContextManager[object] = (
            threading.Lock() if isinstance(engine.pool, StaticPool) else nullcontext()
        )
        if create_tables:
            create_all_tables(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    async def get(self, key: EntityKey) -> Payload | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: EntityKey, payload: Payload) -> bool:
        await asyncio.to_thread(self._set, key, copy_payload(payload) or {})
        log.debug("Stored %s", key)
        return True

    async def delete(self, key: EntityKey) -> bool:
        removed = await asyncio.to_thread(self._delete, key)
        if not removed:
            log.debug("Delete of %s: no row to remove", key)
        return True

    async def snapshot(self) -> dict[EntityKey, Payload]:
        return await asyncio.to_thread(self._snapshot)

    def _get(self, key: EntityKey) -> Payload | None:
        with self._guard, self._session_factory() as session:
            payload = session.execute(
                select(entity_table.c.payload).where(*_matches(key))
            ).scalar_one_or_none()
        return copy_payload(payload)

    def _set(self, key: EntityKey, payload: Payload) -> None:
        values = {"payload": payload, "updated_at": self._clock()}
        with self._guard, self._session_factory.begin() as session:
            result = session.execute(update(entity_table).where(*_matches(key)).values(**values))
            if result.rowcount == 0:
                session.execute(
                    insert(entity_table).values(
                        kind=str(key.kind), entity_id=key.entity_id, **values
                    )
                )

    def _delete(self, key: EntityKey) -> bool:
        with self._guard, self._session_factory.begin() as session:
            result = session.execute(delete(entity_table).where(*_matches(key)))
        return result.rowcount > 0

    def _snapshot(self) -> dict[EntityKey, Payload]:
        with self._guard, self._session_factory() as session:
            rows = session.execute(
                select(entity_table.c.kind, entity_table.c.entity_id, entity_table.c.payload)
            ).all()
        return {
            EntityKey(EntityKind(kind), entity_id): copy_payload(payload) or {}
            for kind, entity_id, payload in rows
        }



def _matches(key: EntityKey) -> tuple[ColumnElement[bool], ColumnElement[bool]]:
    return (
        entity_table.c.kind == str(key.kind),
        entity_table.c.entity_id == key.entity_id,
    )
