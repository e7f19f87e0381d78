"""
SQLite implementation of the local store
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .base import EntityCollection, EntityKind, LocalStore, Record, compute_progress, mean_progress

logger = logging.getLogger(__name__)

# table name, data columns (id / created_at / updated_at are implicit)
TABLES: Dict[EntityKind, Tuple[str, Tuple[str, ...]]] = {
    EntityKind.TODOS: ("todos", ("title", "description", "priority", "status", "due_date", "tags")),
    EntityKind.OKRS: ("okrs", ("title", "description", "quarter", "year", "progress", "status")),
    EntityKind.KEY_RESULTS: ("key_results", (
        "okr_id", "title", "description", "target_value", "current_value", "unit", "progress", "status",
    )),
    EntityKind.TASKS: ("tasks", (
        "okr_id", "kr_id", "title", "description", "priority", "estimated_hours", "actual_hours",
        "status", "due_date", "tags",
    )),
    EntityKind.NOTES: ("notes", ("title", "content", "tags")),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS todos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    priority TEXT DEFAULT 'medium',
    status TEXT DEFAULT 'pending',
    due_date TEXT,
    tags TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS okrs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    quarter TEXT,
    year INTEGER,
    progress INTEGER DEFAULT 0,
    status TEXT DEFAULT 'draft',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS key_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    okr_id INTEGER,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    target_value REAL DEFAULT 0,
    current_value REAL DEFAULT 0,
    unit TEXT,
    progress INTEGER DEFAULT 0,
    status TEXT DEFAULT 'not_started',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    okr_id INTEGER,
    kr_id INTEGER,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    priority TEXT DEFAULT 'medium',
    estimated_hours REAL,
    actual_hours REAL,
    status TEXT DEFAULT 'todo',
    due_date TEXT,
    tags TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL DEFAULT '',
    content TEXT,
    tags TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class SQLiteCollection(EntityCollection):
    """One table of the SQLite store."""

    def __init__(self, store: "SQLiteLocalStore", kind: EntityKind):
        self.store = store
        self.kind = kind
        self.table, self.columns = TABLES[kind]

    def get_all(self) -> List[Record]:
        with self.store.get_connection() as conn:
            rows = conn.execute(f"SELECT * FROM {self.table} ORDER BY id").fetchall()
        return [dict(row) for row in rows]

    def get(self, record_id: int) -> Optional[Record]:
        with self.store.get_connection() as conn:
            row = conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (record_id,)).fetchone()
        return dict(row) if row else None

    def create(self, record: Record) -> int:
        values = {col: record.get(col) for col in self.columns if record.get(col) is not None}
        if self.kind is EntityKind.KEY_RESULTS:
            values["progress"] = compute_progress(record.get("target_value"), record.get("current_value"))
        for col in ("id", "created_at", "updated_at"):
            if record.get(col) is not None:
                values[col] = record[col]
        if "updated_at" not in values:
            values["updated_at"] = None  # filled by CURRENT_TIMESTAMP below

        cols = list(values)
        placeholders = ["CURRENT_TIMESTAMP" if c == "updated_at" and values[c] is None else "?" for c in cols]
        params = [values[c] for c in cols if not (c == "updated_at" and values[c] is None)]

        with self.store.get_connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({', '.join(placeholders)})",
                params,
            )
            conn.commit()
            new_id = cursor.lastrowid

        if self.kind is EntityKind.KEY_RESULTS:
            self.store.refresh_okr_progress([record.get("okr_id")])
        return new_id

    def update(self, record_id: int, changes: Record) -> None:
        fields = [col for col in self.columns if col in changes]
        values = [changes[col] for col in fields]
        previous = None

        if self.kind is EntityKind.KEY_RESULTS:
            previous = self.get(record_id)
            if previous is None:
                return
            merged = {**previous, **changes}
            fields = [f for f in fields if f != "progress"] + ["progress"]
            values = [changes[f] for f in fields[:-1]] + [
                compute_progress(merged.get("target_value"), merged.get("current_value"))
            ]

        assignments = [f"{col} = ?" for col in fields] + ["updated_at = CURRENT_TIMESTAMP"]
        with self.store.get_connection() as conn:
            conn.execute(
                f"UPDATE {self.table} SET {', '.join(assignments)} WHERE id = ?",
                [*values, record_id],
            )
            conn.commit()

        if previous is not None:
            self.store.refresh_okr_progress([previous.get("okr_id"), changes.get("okr_id")])

    def delete(self, record_id: int) -> None:
        previous = self.get(record_id) if self.kind is EntityKind.KEY_RESULTS else None
        with self.store.get_connection() as conn:
            conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))
            conn.commit()
        if previous is not None:
            self.store.refresh_okr_progress([previous.get("okr_id")])


class SQLiteLocalStore(LocalStore):
    """SQLite database backing the todos / OKRs / key results / tasks / notes."""

    def __init__(self, db_path: Path):
        super().__init__()
        self.db_path = Path(db_path)
        self._collections = {kind: SQLiteCollection(self, kind) for kind in EntityKind}

    @property
    def path(self) -> Optional[Path]:
        return self.db_path

    @contextmanager
    def get_connection(self):
        """Get a database connection with context manager"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def ensure_schema(self) -> "SQLiteLocalStore":
        """Create the tables if they do not exist yet."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        return self

    def collection(self, kind: EntityKind) -> SQLiteCollection:
        return self._collections[EntityKind(kind)]

    def refresh_okr_progress(self, okr_ids: Iterable[Optional[int]]) -> None:
        """Re-derive OKR progress as the mean of its key results' progress."""
        if self.rollups_suspended:
            return
        with self.get_connection() as conn:
            for okr_id in {i for i in okr_ids if i is not None}:
                rows = conn.execute("SELECT progress FROM key_results WHERE okr_id = ?", (okr_id,)).fetchall()
                progress = mean_progress([row["progress"] or 0 for row in rows])
                conn.execute(
                    "UPDATE okrs SET progress = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (progress, okr_id),
                )
                logger.debug(f"OKR {okr_id} progress re-derived: {progress}")
            conn.commit()
