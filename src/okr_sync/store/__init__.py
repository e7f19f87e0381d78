"""Local store contract and its SQLite implementation."""

from .base import EntityCollection, EntityKind, LocalStore, Record, compute_progress
from .sqlite_store import SQLiteLocalStore

__all__ = ["EntityCollection", "EntityKind", "LocalStore", "Record", "SQLiteLocalStore", "compute_progress"]
