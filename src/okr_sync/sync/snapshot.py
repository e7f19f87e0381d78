"""Snapshot codec: the five collections as one versioned structure."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..store.base import EntityKind, LocalStore, Record

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0.0"
FILE_FORMAT_VERSION = "1.0"
APP_VERSION = "1.0.0"
SCHEMA_VERSION = "1.0"
METADATA_FILE = "metadata.json"


def utc_timestamp() -> str:
    """Current UTC time as ISO 8601 with milliseconds, e.g. ``2024-01-02T03:04:05.678Z``."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class SyncData(BaseModel):
    """Complete state of all five collections at ``last_sync``."""
    todos: List[Record] = Field(default_factory=list)
    okrs: List[Record] = Field(default_factory=list)
    key_results: List[Record] = Field(default_factory=list, alias="keyResults")
    tasks: List[Record] = Field(default_factory=list)
    notes: List[Record] = Field(default_factory=list)
    last_sync: str = Field(default_factory=utc_timestamp, alias="lastSync")
    version: str = SNAPSHOT_VERSION

    model_config = {"populate_by_name": True}

    def records(self, kind: EntityKind) -> List[Record]:
        return {
            EntityKind.TODOS: self.todos,
            EntityKind.OKRS: self.okrs,
            EntityKind.KEY_RESULTS: self.key_results,
            EntityKind.TASKS: self.tasks,
            EntityKind.NOTES: self.notes,
        }[kind]

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(self.records(kind)) for kind in EntityKind}

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), ensure_ascii=False, indent=2, default=str)

    @classmethod
    def from_json(cls, raw: Any) -> "SyncData":
        """Parse a snapshot from JSON text or bytes."""
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return cls.model_validate(json.loads(raw))


def build_snapshot(store: LocalStore) -> SyncData:
    """Read every collection from the store into a fresh snapshot."""
    collections = store.read_all()
    return SyncData(
        todos=collections[EntityKind.TODOS],
        okrs=collections[EntityKind.OKRS],
        keyResults=collections[EntityKind.KEY_RESULTS],
        tasks=collections[EntityKind.TASKS],
        notes=collections[EntityKind.NOTES],
    )


def write_snapshot_files(data_dir: Path, snapshot: SyncData, strategy: str = "git") -> List[Path]:
    """Write one file per collection plus ``metadata.json``.

    Each collection file is ``{version, lastSync, data}``.

    Args:
        data_dir: Target directory (created if missing)
        snapshot: Snapshot to write
        strategy: Sync strategy tag recorded in the metadata

    Returns:
        Paths written
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    written = []

    for kind in EntityKind:
        payload = {
            'version': FILE_FORMAT_VERSION,
            'lastSync': snapshot.last_sync,
            'data': snapshot.records(kind),
        }
        written.append(_write_json(data_dir / f"{kind.value}.json", payload))

    metadata = {
        'appVersion': APP_VERSION,
        'schemaVersion': SCHEMA_VERSION,
        'lastSync': snapshot.last_sync,
        'syncStrategy': strategy,
    }
    written.append(_write_json(data_dir / METADATA_FILE, metadata))

    logger.debug(f"Wrote snapshot files to {data_dir}: {snapshot.counts()}")
    return written


def read_snapshot_dir(data_dir: Path) -> SyncData:
    """Read a snapshot back from the files written by :func:`write_snapshot_files`.

    Missing collection files read as empty collections.
    """
    collections: Dict[str, List[Record]] = {}
    last_sync = None

    for kind in EntityKind:
        path = data_dir / f"{kind.value}.json"
        if not path.exists():
            collections[kind.value] = []
            continue
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
        collections[kind.value] = payload.get('data', [])
        last_sync = last_sync or payload.get('lastSync')

    metadata_path = data_dir / METADATA_FILE
    if metadata_path.exists():
        with open(metadata_path, 'r', encoding='utf-8') as f:
            last_sync = json.load(f).get('lastSync', last_sync)

    return SyncData.model_validate({**collections, 'lastSync': last_sync or utc_timestamp()})


def _write_json(path: Path, payload: Dict[str, Any]) -> Path:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
    return path
