"""Public interface for the REST entity store adapter."""

from __future__ import annotations

from .client import ENTITIES_PATH, HttpEntityStore, HttpStoreError
from .schema import EntityListResponse, EntityRecord, EntityWriteRequest

__all__ = [
    "ENTITIES_PATH",
    "EntityListResponse",
    "EntityRecord",
    "EntityWriteRequest",
    "HttpEntityStore",
    "HttpStoreError",
]
