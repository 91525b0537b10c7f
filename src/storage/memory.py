"""
In-memory ledger store.

This backend keeps every table in process memory, useful for:
- Unit testing
- Development
- Single-process dry runs of distribution jobs
"""

import copy
import threading
from typing import Any

from storage.base import LedgerStore, StorageWriteError, new_row_key, row_matches


class MemoryLedgerStore(LedgerStore):
    """
    In-memory ledger store.

    All data is lost when the process exits. Thread-safe operations.
    """

    def __init__(self, initial_data: dict[str, dict[str, dict[str, Any]]] | None = None):
        """Initialize memory storage, optionally from a table -> key -> row snapshot."""
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        # Use RLock so subclasses can persist from inside write operations
        self._lock = threading.RLock()
        if initial_data:
            self._tables = copy.deepcopy(initial_data)

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _after_write(self) -> None:
        """Hook for persistent subclasses."""
        pass

    def insert(self, table: str, row: dict[str, Any], key: str | None = None) -> str:
        with self._lock:
            rows = self._table(table)
            key = key or new_row_key()
            if key in rows:
                raise StorageWriteError(f"Duplicate key {key!r} in {table}")
            # Store a deep copy to prevent external modification
            rows[key] = copy.deepcopy(row)
            self._after_write()
            return key

    def insert_unique(self, table: str, key: str, row: dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            if key in rows:
                return False
            rows[key] = copy.deepcopy(row)
            self._after_write()
            return True

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._table(table).get(key)
            return copy.deepcopy(row) if row is not None else None

    def select(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._table(table).values()
                if row_matches(row, filters)
            ]

    def select_keys(self, table: str, **filters: Any) -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            return [
                (key, copy.deepcopy(row))
                for key, row in self._table(table).items()
                if row_matches(row, filters)
            ]

    def upsert(self, table: str, key: str, row: dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[key] = copy.deepcopy(row)
            self._after_write()

    def update_where(
        self,
        table: str,
        key: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        with self._lock:
            row = self._table(table).get(key)
            if row is None or not row_matches(row, expected):
                return False
            row.update(copy.deepcopy(changes))
            self._after_write()
            return True

    def delete(self, table: str, key: str) -> bool:
        with self._lock:
            existed = self._table(table).pop(key, None) is not None
            if existed:
                self._after_write()
            return existed

    def delete_where(self, table: str, **filters: Any) -> int:
        with self._lock:
            rows = self._table(table)
            doomed = [key for key, row in rows.items() if row_matches(row, filters)]
            for key in doomed:
                del rows[key]
            if doomed:
                self._after_write()
            return len(doomed)

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        with self._lock:
            info["row_counts"] = {name: len(rows) for name, rows in self._tables.items()}
        return info

    def snapshot(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Deep copy of every table."""
        with self._lock:
            return copy.deepcopy(self._tables)

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._tables = {}
            self._after_write()
