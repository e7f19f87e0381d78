"""Local store contract shared by the sync and backup engines."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

Record = Dict[str, Any]


class EntityKind(str, Enum):
    """The five tracked collections, valued by their snapshot key."""
    TODOS = "todos"
    OKRS = "okrs"
    KEY_RESULTS = "keyResults"
    TASKS = "tasks"
    NOTES = "notes"


def compute_progress(target_value: Any, current_value: Any) -> int:
    """KeyResult progress: ``round(current / target * 100)`` clamped to 0-100.

    A non-positive (or missing) target yields 0. Rounds half up.
    """
    try:
        target = float(target_value or 0)
        current = float(current_value or 0)
    except (TypeError, ValueError):
        return 0
    if target <= 0:
        return 0
    return max(0, min(100, _round_half_up(current / target * 100)))


def mean_progress(values: List[int]) -> int:
    """Mean of KeyResult progress values, rounded half up; 0 when empty."""
    if not values:
        return 0
    return _round_half_up(sum(values) / len(values))


def _round_half_up(value: float) -> int:
    # floor(x + 0.5); builtin round() uses banker's rounding
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


class EntityCollection(ABC):
    """CRUD access to one collection, keyed by a stable integer id."""

    kind: EntityKind

    @abstractmethod
    def get_all(self) -> List[Record]:
        """Return every record in the collection."""

    @abstractmethod
    def get(self, record_id: int) -> Optional[Record]:
        """Return one record or None."""

    @abstractmethod
    def create(self, record: Record) -> int:
        """Insert a record and return its id.

        A supplied ``id`` (and ``created_at``/``updated_at``) is kept verbatim.
        """

    @abstractmethod
    def update(self, record_id: int, changes: Record) -> None:
        """Apply a partial update."""

    @abstractmethod
    def delete(self, record_id: int) -> None:
        """Delete a record by id."""


class LocalStore(ABC):
    """The application's local database as seen by the remote engines."""

    def __init__(self):
        self._rollups_suspended = False

    @property
    @abstractmethod
    def path(self) -> Optional[Path]:
        """Backing file of the store, if it has one."""

    @abstractmethod
    def collection(self, kind: EntityKind) -> EntityCollection:
        """Access one of the five collections."""

    def read_all(self) -> Dict[EntityKind, List[Record]]:
        """Read every collection."""
        return {kind: self.collection(kind).get_all() for kind in EntityKind}

    @property
    def rollups_suspended(self) -> bool:
        return self._rollups_suspended

    @contextmanager
    def suspended_rollups(self) -> Iterator["LocalStore"]:
        """Skip OKR progress re-derivation while restoring records verbatim."""
        previous = self._rollups_suspended
        self._rollups_suspended = True
        try:
            yield self
        finally:
            self._rollups_suspended = previous
