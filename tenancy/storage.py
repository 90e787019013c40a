"""
Record Store - Durable Keyed Maps with Per-Kind Id Counters

The lifecycle engine only needs a key -> record map with insert, point lookup,
full update and filtered scan, plus a monotonically increasing id allocator per
entity kind. Records cross this boundary as plain dictionaries.

Two implementations:
- InMemoryRecordStore: development and tests
- JsonFileRecordStore: persists every table and counter to one JSON file
"""

from __future__ import annotations

import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Final, Optional, Union

from tenancy.errors import DuplicateRecordError, RecordNotFoundError, StorageError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RENTALS_TABLE: Final[str] = "rentals"
RENTAL_HISTORY_TABLE: Final[str] = "rental_history"
ESCROWS_TABLE: Final[str] = "escrows"
ESCROW_EVENTS_TABLE: Final[str] = "escrow_events"

ALL_TABLES: Final[tuple[str, ...]] = (
    RENTALS_TABLE,
    RENTAL_HISTORY_TABLE,
    ESCROWS_TABLE,
    ESCROW_EVENTS_TABLE,
)

Record = dict[str, Any]
RecordFilter = Callable[[Record], bool]


# =============================================================================
# Interface
# =============================================================================


class RecordStore(ABC):
    """Abstract keyed record storage with an id allocator."""

    @abstractmethod
    def next_id(self, kind: str) -> int:
        """
        Allocate the next id for an entity kind.

        Ids start at 1 and never repeat, even across restarts.
        """
        pass

    @abstractmethod
    def insert(self, table: str, record_id: int, record: Record) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateRecordError: If record_id already exists in table
        """
        pass

    @abstractmethod
    def insert_new(self, table: str, kind: str, build: Callable[[int], Record]) -> int:
        """
        Allocate the next id for kind and insert build(id) as one write.

        Nothing is allocated or stored if build or the write fails.

        Returns:
            The new record id
        """
        pass

    @abstractmethod
    def get(self, table: str, record_id: int) -> Optional[Record]:
        """Get a copy of a record, or None if not found."""
        pass

    @abstractmethod
    def update(self, table: str, record_id: int, record: Record) -> None:
        """
        Replace an existing record.

        Raises:
            RecordNotFoundError: If record_id does not exist in table
        """
        pass

    @abstractmethod
    def scan(
        self,
        table: str,
        predicate: Optional[RecordFilter] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[Record]:
        """
        Get copies of matching records ordered by id.

        Args:
            table: Table name
            predicate: Optional filter applied to each record
            offset: Number of matching records to skip
            limit: Maximum number of records to return (None for all)
        """
        pass

    def count(self, table: str, predicate: Optional[RecordFilter] = None) -> int:
        """Count matching records."""
        return len(self.scan(table, predicate))


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryRecordStore(RecordStore):
    """
    Record store backed by dictionaries.

    Returned records are deep copies so callers cannot mutate stored state.
    Every write is staged, handed to _persist, and only then committed, so a
    write that fails to persist leaves the store unchanged.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[int, Record]] = {name: {} for name in ALL_TABLES}
        self._counters: dict[str, int] = {}

    def _table(self, table: str) -> dict[int, Record]:
        return self._tables.get(table, {})

    def _persist(self, tables: dict[str, dict[int, Record]], counters: dict[str, int]) -> None:
        """Hook given the staged state before a write is committed."""
        pass

    def _commit(
        self,
        table: Optional[str] = None,
        record_id: Optional[int] = None,
        record: Optional[Record] = None,
        counters: Optional[dict[str, int]] = None,
    ) -> None:
        tables = self._tables
        if table is not None:
            tables = dict(self._tables)
            tables[table] = {**self._table(table), record_id: copy.deepcopy(record)}
        counters = self._counters if counters is None else counters

        self._persist(tables, counters)
        self._tables = tables
        self._counters = counters

    def next_id(self, kind: str) -> int:
        counters = dict(self._counters)
        counters[kind] = counters.get(kind, 0) + 1
        self._commit(counters=counters)
        return counters[kind]

    def insert(self, table: str, record_id: int, record: Record) -> None:
        if record_id in self._table(table):
            raise DuplicateRecordError(table, record_id)
        self._commit(table, record_id, record)

    def insert_new(self, table: str, kind: str, build: Callable[[int], Record]) -> int:
        counters = dict(self._counters)
        record_id = counters.get(kind, 0) + 1
        counters[kind] = record_id
        if record_id in self._table(table):
            raise DuplicateRecordError(table, record_id)
        self._commit(table, record_id, build(record_id), counters)
        return record_id

    def get(self, table: str, record_id: int) -> Optional[Record]:
        record = self._table(table).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def update(self, table: str, record_id: int, record: Record) -> None:
        if record_id not in self._table(table):
            raise RecordNotFoundError(table, record_id)
        self._commit(table, record_id, record)

    def scan(
        self,
        table: str,
        predicate: Optional[RecordFilter] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[Record]:
        rows = self._table(table)
        matches = [
            rows[record_id]
            for record_id in sorted(rows)
            if predicate is None or predicate(rows[record_id])
        ]
        end = None if limit is None else offset + limit
        return [copy.deepcopy(r) for r in matches[offset:end]]

    def count(self, table: str, predicate: Optional[RecordFilter] = None) -> int:
        rows = self._table(table)
        if predicate is None:
            return len(rows)
        return sum(1 for r in rows.values() if predicate(r))


# =============================================================================
# JSON File Implementation
# =============================================================================


class JsonFileRecordStore(InMemoryRecordStore):
    """
    In-memory record store with JSON file persistence.

    Every write (including id allocation) rewrites the file before it is
    committed in memory, so counters survive a restart together with the
    records they numbered, and a failed write changes neither.
    """

    def __init__(self, persist_path: Union[str, Path]):
        """
        Initialise store.

        Args:
            persist_path: Path to the JSON file (created on first write)
        """
        super().__init__()
        self._persist_path = Path(persist_path)

        if self._persist_path.exists():
            self._load_from_file()

    @property
    def persist_path(self) -> Path:
        return self._persist_path

    def _persist(self, tables: dict[str, dict[int, Record]], counters: dict[str, int]) -> None:
        self._save_to_file(tables, counters)

    def _save_to_file(self, tables: dict[str, dict[int, Record]], counters: dict[str, int]) -> None:
        """Persist tables and counters to file."""
        data = {
            "tables": {
                name: {str(rid): rec for rid, rec in rows.items()}
                for name, rows in tables.items()
            },
            "counters": dict(counters),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

        tmp_path = self._persist_path.with_suffix(self._persist_path.suffix + ".tmp")
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2))
            tmp_path.replace(self._persist_path)
        except OSError as e:
            raise StorageError(f"Could not write record store {self._persist_path}: {e}") from e

    def _load_from_file(self) -> None:
        """Load tables and counters from file."""
        try:
            data = json.loads(self._persist_path.read_text())
            for name, rows in data.get("tables", {}).items():
                self._tables[name] = {int(rid): rec for rid, rec in rows.items()}
            self._counters = {k: int(v) for k, v in data.get("counters", {}).items()}
        except (json.JSONDecodeError, KeyError, ValueError, AttributeError) as e:
            # Start fresh rather than refuse to boot
            logger.warning("Could not load record store %s: %s", self._persist_path, e)
            self._tables = {name: {} for name in ALL_TABLES}
            self._counters = {}
