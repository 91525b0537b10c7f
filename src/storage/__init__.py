"""
Ledger store abstraction for RiftSettle.

This package provides pluggable ledger store backends for the settlement
core's tables (earnings, claims, referral rows, payment audit, claim
intents, ...):

- Memory (default for tests and dry runs)
- JSON file (single instance, optional encryption at rest)
- PostgreSQL (production, multi-instance)

Usage:
    from storage import get_ledger_store

    store = get_ledger_store()
    store.insert("earnings", earning.to_dict())
    rows = store.select("earnings", wallet=wallet)
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    LedgerStore,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileLedgerStore
from storage.memory import MemoryLedgerStore

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLLedgerStore

__all__ = [
    "JSONFileLedgerStore",
    "LedgerStore",
    "MemoryLedgerStore",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_ledger_store",
    "get_default_store",
    "reset_default_store",
]


def get_ledger_store() -> LedgerStore:
    """
    Get the configured ledger store based on environment variables.

    Environment variables:
        STORAGE_BACKEND: Backend type ("memory", "json", "postgresql")
        LEDGER_DATA_FILE: Path for JSON file storage (default: ledger_data.json)
        DATABASE_URL: PostgreSQL connection URL
        RIFTSETTLE_ENCRYPTION_KEY: Encrypts the JSON file when set

    Returns:
        Configured LedgerStore instance
    """
    backend_type = os.getenv("STORAGE_BACKEND", "json").lower()

    if backend_type == "json":
        from encryption import is_encryption_enabled

        data_file = os.getenv("LEDGER_DATA_FILE", "ledger_data.json")
        return JSONFileLedgerStore(data_file, encryption_enabled=is_encryption_enabled())

    elif backend_type == "postgresql" or backend_type == "postgres":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLLedgerStore

        return PostgreSQLLedgerStore(
            database_url, pool_size=int(os.getenv("DATABASE_POOL_SIZE", "5"))
        )

    elif backend_type == "memory":
        return MemoryLedgerStore()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")


# Default store instance (lazy initialization)
_default_store: LedgerStore | None = None


def get_default_store() -> LedgerStore:
    """Get or create the default ledger store."""
    global _default_store
    if _default_store is None:
        _default_store = get_ledger_store()
    return _default_store


def reset_default_store() -> None:
    """Drop the default store (useful for testing)."""
    global _default_store
    if _default_store is not None:
        _default_store.close()
    _default_store = None
