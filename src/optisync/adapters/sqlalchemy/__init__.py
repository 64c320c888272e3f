"""SQLAlchemy adapter package for optisync."""

from __future__ import annotations

from .mappings import create_all_tables, entity_table, metadata
from .store import SqlAlchemyEntityStore, create_store_engine

__all__ = [
    "SqlAlchemyEntityStore",
    "create_all_tables",
    "create_store_engine",
    "entity_table",
    "metadata",
]
