"""
Abstract base class for ledger store backends.

This module defines the interface that all ledger stores must implement.
Rows are plain JSON-compatible dictionaries grouped into named tables and
addressed by a string key. Backends guarantee read-your-writes within a
process and provide two conditional primitives the settlement core relies
on for exactly-once behaviour:

- insert_unique: insert only if the key is absent (idempotency keys)
- update_where: compare-and-swap on selected fields (cumulative counters)
"""

import secrets
from abc import ABC, abstractmethod
from typing import Any


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


# Tables used by the settlement core
TABLES = (
    "rift_configs",
    "legacy_team_rifts",
    "rifts",
    "trades",
    "lp_positions",
    "earnings",
    "claims",
    "referrals",
    "referred_rifts",
    "referral_earnings",
    "referral_claims",
    "treasury_payments",
    "claim_intents",
    "audit_retry_queue",
    "escrow_accounts",
    "team_payments",
    "lp_payments",
    "reset_tokens",
    "reset_confirmations",
    "aggregator_state",
)


def new_row_key() -> str:
    """Generate a key for append-only rows."""
    return secrets.token_hex(12)


def row_matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    """Equality match on every filter field."""
    return all(row.get(name) == value for name, value in filters.items())


class LedgerStore(ABC):
    """
    Abstract base class for ledger store backends.

    All backends must implement these methods to provide a consistent
    interface for the settlement core.
    """

    @abstractmethod
    def insert(self, table: str, row: dict[str, Any], key: str | None = None) -> str:
        """
        Append a row.

        Args:
            table: Table name
            row: Row data
            key: Optional explicit key (generated when omitted)

        Returns:
            The row key

        Raises:
            StorageWriteError: If the key already exists or writing fails
        """
        pass

    @abstractmethod
    def insert_unique(self, table: str, key: str, row: dict[str, Any]) -> bool:
        """
        Insert a row only if no row with the same key exists.

        Returns:
            True if inserted, False if the key was already present
        """
        pass

    @abstractmethod
    def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Get a single row by key, or None."""
        pass

    @abstractmethod
    def select(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        """
        Select rows matching all equality filters, in insertion order.

        Raises:
            StorageReadError: If reading fails
        """
        pass

    @abstractmethod
    def upsert(self, table: str, key: str, row: dict[str, Any]) -> None:
        """Insert or fully replace a row."""
        pass

    @abstractmethod
    def update_where(
        self,
        table: str,
        key: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        """
        Apply changes to a row only if all expected fields still match.

        Returns:
            True if the row existed, matched and was updated
        """
        pass

    @abstractmethod
    def delete(self, table: str, key: str) -> bool:
        """Delete a row by key. Returns True if it existed."""
        pass

    @abstractmethod
    def delete_where(self, table: str, **filters: Any) -> int:
        """Delete every row matching the filters. Returns the count deleted."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    # Optional methods with default implementations

    def count(self, table: str, **filters: Any) -> int:
        """Count rows matching the filters."""
        return len(self.select(table, **filters))

    def select_keys(self, table: str, **filters: Any) -> list[tuple[str, dict[str, Any]]]:
        """
        Select (key, row) pairs.

        Default implementation requires rows to carry their key in ``_key``;
        backends override this to return keys natively.
        """
        return [(row.get("_key", ""), row) for row in self.select(table, **filters)]

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False
