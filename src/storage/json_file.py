"""
JSON file ledger store.

Persists every table to a single local JSON file after each write. Suitable
for single-instance deployments and operator tooling; multi-instance
deployments should use PostgreSQL.
"""

import json
import os
import shutil
from datetime import datetime
from typing import Any

from storage.base import StorageError, StorageReadError, StorageWriteError
from storage.memory import MemoryLedgerStore


class JSONFileLedgerStore(MemoryLedgerStore):
    """
    JSON file ledger store.

    Keeps the working set in memory and rewrites the file atomically
    (temp file + rename) on every mutation, optionally encrypted at rest.
    """

    def __init__(self, file_path: str = "ledger_data.json", encryption_enabled: bool = False):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
            encryption_enabled: Encrypt the file with RIFTSETTLE_ENCRYPTION_KEY
        """
        super().__init__()
        self.file_path = file_path
        self.encryption_enabled = encryption_enabled
        self._cipher = None

        if encryption_enabled:
            from encryption import LedgerCipher

            self._cipher = LedgerCipher()

        loaded = self._load()
        if loaded:
            self._tables = loaded

    def _load(self) -> dict[str, dict[str, dict[str, Any]]] | None:
        """
        Load tables from the JSON file.

        Raises:
            StorageReadError: If reading fails
        """
        try:
            if not os.path.exists(self.file_path):
                return None

            with open(self.file_path, encoding="utf-8") as f:
                raw_data = f.read()

            if not raw_data.strip():
                return None

            if self._cipher is not None:
                from encryption import is_encrypted

                if is_encrypted(raw_data):
                    return self._cipher.decrypt(raw_data)

            return json.loads(raw_data)

        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to load ledger: {e}") from e

    def _after_write(self) -> None:
        """Write all tables to disk atomically. Called with the store lock held."""
        try:
            if self._cipher is not None:
                data = self._cipher.encrypt(self._tables)
            else:
                data = json.dumps(self._tables, indent=2, ensure_ascii=False)

            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)

            os.replace(temp_path, self.file_path)

        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except OSError as e:
            raise StorageWriteError(f"OS error: {e}") from e

    def is_available(self) -> bool:
        """True if the file's directory exists and is writable."""
        directory = os.path.dirname(self.file_path) or "."
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update(
            {
                "file_path": self.file_path,
                "file_exists": os.path.exists(self.file_path),
                "encryption_enabled": self.encryption_enabled,
            }
        )
        if os.path.exists(self.file_path):
            try:
                info["file_size_bytes"] = os.stat(self.file_path).st_size
            except OSError:
                pass
        return info

    def backup(self, backup_path: str | None = None) -> str:
        """
        Copy the ledger file aside before destructive maintenance.

        Returns:
            Path to the backup file

        Raises:
            StorageError: If backup fails
        """
        if backup_path is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup_path = f"{self.file_path}.{timestamp}.backup"

        with self._lock:
            if not os.path.exists(self.file_path):
                raise StorageError("No file to backup")
            try:
                shutil.copy2(self.file_path, backup_path)
            except OSError as e:
                raise StorageError(f"Backup failed: {e}") from e
        return backup_path
