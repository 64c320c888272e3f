"""Pydantic models for the REST entity store payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from optisync.domain.model import EntityKind


class StoreBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class EntityRecord(StoreBaseModel):
    kind: EntityKind
    entity_id: str = Field(alias="id", min_length=1)
    payload: dict[str, Any]


class EntityListResponse(StoreBaseModel):
    entities: list[EntityRecord] = Field(default_factory=list)


class EntityWriteRequest(StoreBaseModel):
    payload: dict[str, Any]
