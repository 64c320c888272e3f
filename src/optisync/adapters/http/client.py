"""Entity store backed by a REST service.

Resources live under ``/entities``:

- ``GET /entities`` lists every entity (the snapshot)
- ``GET /entities/{kind}/{id}`` returns one entity or 404
- ``PUT /entities/{kind}/{id}`` writes the full payload
- ``DELETE /entities/{kind}/{id}`` removes it; a 404 counts as already deleted
"""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Final
from urllib.parse import quote

import httpx

from optisync.adapters.http_resilience import ResilientClient
from optisync.domain.model import EntityKey

from .schema import EntityListResponse, EntityRecord, EntityWriteRequest

if TYPE_CHECKING:
    from types import TracebackType

    from optisync.config.store import HttpStoreConfig
    from optisync.domain.model import Payload

log = getLogger(__name__)

ENTITIES_PATH: Final[str] = "/entities"
# Rejections the store reports for a write it refused to apply.
_REJECTED_STATUSES: Final[frozenset[int]] = frozenset({409, 412, 422})


class HttpStoreError(RuntimeError):
    """Raised when the store answers with something other than the agreed schema."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpEntityStore:
    def __init__(
        self,
        config: HttpStoreConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = ResilientClient(config.resilience(), transport=transport)

    async def __aenter__(self) -> HttpEntityStore:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, key: EntityKey) -> Payload | None:
        response = await self._client.get(_entity_path(key))
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        response.raise_for_status()
        record = EntityRecord.model_validate(response.json())
        if record.kind is not key.kind or record.entity_id != key.entity_id:
            raise HttpStoreError(f"Store answered {record.kind}:{record.entity_id} for {key}")
        return record.payload

    async def set(self, key: EntityKey, payload: Payload) -> bool:
        body = EntityWriteRequest(payload=dict(payload))
        response = await self._client.put(_entity_path(key), json=body.model_dump(mode="json"))
        if response.status_code in _REJECTED_STATUSES:
            log.warning("Store rejected write of %s: HTTP %s", key, response.status_code)
            return False
        response.raise_for_status()
        return True

    async def delete(self, key: EntityKey) -> bool:
        response = await self._client.delete(_entity_path(key))
        if response.status_code == httpx.codes.NOT_FOUND:
            log.debug("Delete of %s: already absent from the store", key)
            return True
        if response.status_code in _REJECTED_STATUSES:
            log.warning("Store rejected delete of %s: HTTP %s", key, response.status_code)
            return False
        response.raise_for_status()
        return True

    async def snapshot(self) -> dict[EntityKey, Payload]:
        response = await self._client.get(ENTITIES_PATH)
        response.raise_for_status()
        try:
            listing = EntityListResponse.model_validate(response.json())
        except ValueError as exc:
            raise HttpStoreError(
                "Unexpected snapshot payload", status_code=response.status_code
            ) from exc
        return {
            EntityKey(record.kind, record.entity_id): record.payload for record in listing.entities
        }


def _entity_path(key: EntityKey) -> str:
    return f"{ENTITIES_PATH}/{key.kind}/{quote(key.entity_id, safe='')}"
