"""
Tests for RiftSettle ledger store backends.

Tests:
- MemoryLedgerStore keyed rows, filters and compare-and-swap updates
- JSONFileLedgerStore persistence, encryption at rest and backups
- get_ledger_store() backend selection
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from storage import (
    JSONFileLedgerStore,
    MemoryLedgerStore,
    StorageError,
    StorageReadError,
    StorageWriteError,
    get_ledger_store,
)
from storage.base import TABLES, new_row_key, row_matches


class TestHelpers:
    def test_new_row_keys_are_unique(self):
        keys = {new_row_key() for _ in range(100)}
        assert len(keys) == 100
        assert all(len(key) == 24 for key in keys)

    def test_row_matches(self):
        row = {"wallet": "w1", "rift_id": "r1"}
        assert row_matches(row, {}) is True
        assert row_matches(row, {"wallet": "w1"}) is True
        assert row_matches(row, {"wallet": "w1", "rift_id": "r2"}) is False
        assert row_matches(row, {"missing": None}) is True

    def test_known_tables(self):
        assert "earnings" in TABLES
        assert "claim_intents" in TABLES


class TestMemoryLedgerStore:
    """Tests for the in-memory backend."""

    def test_insert_and_get(self):
        store = MemoryLedgerStore()
        key = store.insert("earnings", {"wallet": "w1", "amount": "1.5"})
        assert store.get("earnings", key) == {"wallet": "w1", "amount": "1.5"}

    def test_insert_with_explicit_key(self):
        store = MemoryLedgerStore()
        assert store.insert("claims", {"amount": "1"}, key="sig-1") == "sig-1"

    def test_duplicate_key_rejected(self):
        store = MemoryLedgerStore()
        store.insert("claims", {"amount": "1"}, key="sig-1")
        with pytest.raises(StorageWriteError):
            store.insert("claims", {"amount": "2"}, key="sig-1")
        assert store.get("claims", "sig-1")["amount"] == "1"

    def test_insert_unique(self):
        store = MemoryLedgerStore()
        assert store.insert_unique("claim_intents", "idem-1", {"state": "pending"}) is True
        assert store.insert_unique("claim_intents", "idem-1", {"state": "other"}) is False
        assert store.get("claim_intents", "idem-1")["state"] == "pending"

    def test_get_missing(self):
        assert MemoryLedgerStore().get("earnings", "nope") is None

    def test_rows_are_copied(self):
        """Mutating returned or inserted dicts does not change stored rows."""
        store = MemoryLedgerStore()
        row = {"wallet": "w1", "tags": ["a"]}
        key = store.insert("earnings", row)
        row["tags"].append("b")

        fetched = store.get("earnings", key)
        fetched["wallet"] = "changed"

        assert store.get("earnings", key) == {"wallet": "w1", "tags": ["a"]}

    def test_select_filters(self):
        store = MemoryLedgerStore()
        store.insert("earnings", {"wallet": "w1", "rift_id": "r1"})
        store.insert("earnings", {"wallet": "w1", "rift_id": "r2"})
        store.insert("earnings", {"wallet": "w2", "rift_id": "r1"})

        assert len(store.select("earnings")) == 3
        assert len(store.select("earnings", wallet="w1")) == 2
        assert len(store.select("earnings", wallet="w1", rift_id="r2")) == 1
        assert store.count("earnings", rift_id="r1") == 2
        assert store.select("unknown_table") == []

    def test_select_keys(self):
        store = MemoryLedgerStore()
        store.insert("lp_positions", {"wallet": "w1"}, key="r1:w1")
        assert store.select_keys("lp_positions", wallet="w1") == [("r1:w1", {"wallet": "w1"})]

    def test_upsert_replaces(self):
        store = MemoryLedgerStore()
        store.upsert("rift_configs", "r1", {"lp_split": 40, "fees_enabled": True})
        store.upsert("rift_configs", "r1", {"lp_split": 60})
        assert store.get("rift_configs", "r1") == {"lp_split": 60}

    def test_update_where_applies_when_expected_matches(self):
        store = MemoryLedgerStore()
        store.upsert("claim_intents", "k", {"state": "pending", "amount": "1"})

        assert store.update_where("claim_intents", "k", {"state": "pending"}, {"state": "settled"}) is True
        assert store.get("claim_intents", "k") == {"state": "settled", "amount": "1"}

    def test_update_where_rejects_stale_expectation(self):
        store = MemoryLedgerStore()
        store.upsert("claim_intents", "k", {"state": "settled"})
        assert store.update_where("claim_intents", "k", {"state": "pending"}, {"state": "failed"}) is False
        assert store.get("claim_intents", "k")["state"] == "settled"

    def test_update_where_missing_row(self):
        assert MemoryLedgerStore().update_where("t", "k", {}, {"x": 1}) is False

    def test_delete(self):
        store = MemoryLedgerStore()
        store.insert("earnings", {"wallet": "w1"}, key="e1")
        assert store.delete("earnings", "e1") is True
        assert store.delete("earnings", "e1") is False

    def test_delete_where(self):
        store = MemoryLedgerStore()
        for i in range(3):
            store.insert("rift_trades", {"rift_id": "r1", "n": i})
        store.insert("rift_trades", {"rift_id": "r2", "n": 0})

        assert store.delete_where("rift_trades", rift_id="r1") == 3
        assert store.delete_where("rift_trades", rift_id="r1") == 0
        assert store.count("rift_trades") == 1

    def test_initial_data_and_snapshot(self):
        initial = {"earnings": {"e1": {"wallet": "w1"}}}
        store = MemoryLedgerStore(initial)
        initial["earnings"]["e1"]["wallet"] = "changed"

        assert store.get("earnings", "e1") == {"wallet": "w1"}
        assert store.snapshot() == {"earnings": {"e1": {"wallet": "w1"}}}

    def test_clear(self):
        store = MemoryLedgerStore({"earnings": {"e1": {"wallet": "w1"}}})
        store.clear()
        assert store.snapshot() == {}

    def test_get_info(self):
        store = MemoryLedgerStore()
        store.insert("earnings", {"wallet": "w1"})
        info = store.get_info()
        assert info["backend_type"] == "MemoryLedgerStore"
        assert info["available"] is True
        assert info["row_counts"] == {"earnings": 1}

    def test_context_manager(self):
        with MemoryLedgerStore() as store:
            store.insert("earnings", {"wallet": "w1"})


class TestJSONFileLedgerStore:
    """Tests for the JSON file backend."""

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "ledger.json")
        store = JSONFileLedgerStore(path)
        store.insert("earnings", {"wallet": "w1", "amount": "2"}, key="e1")

        reloaded = JSONFileLedgerStore(path)
        assert reloaded.get("earnings", "e1") == {"wallet": "w1", "amount": "2"}

    def test_file_is_plain_json(self, tmp_path):
        path = tmp_path / "ledger.json"
        store = JSONFileLedgerStore(str(path))
        store.upsert("rift_configs", "r1", {"lp_split": 40})

        assert json.loads(path.read_text()) == {"rift_configs": {"r1": {"lp_split": 40}}}
        assert not (tmp_path / "ledger.json.tmp").exists()

    def test_missing_file_starts_empty(self, tmp_path):
        store = JSONFileLedgerStore(str(tmp_path / "absent.json"))
        assert store.snapshot() == {}
        assert store.get_info()["file_exists"] is False

    def test_empty_file_starts_empty(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("   ")
        assert JSONFileLedgerStore(str(path)).snapshot() == {}

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("{not json")
        with pytest.raises(StorageReadError):
            JSONFileLedgerStore(str(path))

    def test_delete_where_persists(self, tmp_path):
        path = str(tmp_path / "ledger.json")
        store = JSONFileLedgerStore(path)
        store.insert("rift_trades", {"rift_id": "r1"})
        store.delete_where("rift_trades", rift_id="r1")

        assert JSONFileLedgerStore(path).count("rift_trades") == 0

    def test_is_available(self, tmp_path):
        assert JSONFileLedgerStore(str(tmp_path / "ledger.json")).is_available() is True
        missing_dir = JSONFileLedgerStore(str(tmp_path / "nope" / "ledger.json"))
        assert missing_dir.is_available() is False

    def test_get_info(self, tmp_path):
        store = JSONFileLedgerStore(str(tmp_path / "ledger.json"))
        store.insert("earnings", {"wallet": "w1"})
        info = store.get_info()
        assert info["file_exists"] is True
        assert info["encryption_enabled"] is False
        assert info["file_size_bytes"] > 0

    def test_backup(self, tmp_path):
        path = tmp_path / "ledger.json"
        store = JSONFileLedgerStore(str(path))
        store.insert("earnings", {"wallet": "w1"})

        backup_path = store.backup(str(tmp_path / "copy.json"))
        assert json.loads((tmp_path / "copy.json").read_text()) == json.loads(path.read_text())
        assert backup_path.endswith("copy.json")

    def test_backup_default_name(self, tmp_path):
        store = JSONFileLedgerStore(str(tmp_path / "ledger.json"))
        store.insert("earnings", {"wallet": "w1"})
        assert store.backup().endswith(".backup")

    def test_backup_without_file(self, tmp_path):
        store = JSONFileLedgerStore(str(tmp_path / "ledger.json"))
        with pytest.raises(StorageError, match="No file to backup"):
            store.backup()


class TestEncryptedJSONFile:
    """Tests for the encrypted JSON file backend."""

    @pytest.fixture(autouse=True)
    def encryption_key(self, monkeypatch):
        monkeypatch.setenv("RIFTSETTLE_ENCRYPTION_KEY", "unit-test-passphrase")

    def test_file_is_encrypted(self, tmp_path):
        path = tmp_path / "ledger.json"
        store = JSONFileLedgerStore(str(path), encryption_enabled=True)
        store.insert("earnings", {"wallet": "SecretWallet"})

        raw = path.read_text()
        assert raw.startswith("RSENC:1:")
        assert "SecretWallet" not in raw

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "ledger.json")
        JSONFileLedgerStore(path, encryption_enabled=True).insert("earnings", {"wallet": "w1"}, key="e1")
        assert JSONFileLedgerStore(path, encryption_enabled=True).get("earnings", "e1") == {"wallet": "w1"}

    def test_reads_legacy_plaintext(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text(json.dumps({"earnings": {"e1": {"wallet": "w1"}}}))
        store = JSONFileLedgerStore(str(path), encryption_enabled=True)
        assert store.get("earnings", "e1") == {"wallet": "w1"}


class TestGetLedgerStore:
    """Tests for environment-driven backend selection."""

    def test_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        assert isinstance(get_ledger_store(), MemoryLedgerStore)

    def test_json(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        monkeypatch.setenv("LEDGER_DATA_FILE", str(tmp_path / "ledger.json"))
        monkeypatch.delenv("RIFTSETTLE_ENCRYPTION_KEY", raising=False)

        store = get_ledger_store()
        assert isinstance(store, JSONFileLedgerStore)
        assert store.encryption_enabled is False

    def test_json_encrypted_when_key_set(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORAGE_BACKEND", "json")
        monkeypatch.setenv("LEDGER_DATA_FILE", str(tmp_path / "ledger.json"))
        monkeypatch.setenv("RIFTSETTLE_ENCRYPTION_KEY", "k")
        monkeypatch.delenv("RIFTSETTLE_ENCRYPTION_ENABLED", raising=False)

        assert get_ledger_store().encryption_enabled is True

    def test_postgresql_requires_url(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgresql")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(StorageError, match="DATABASE_URL"):
            get_ledger_store()

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "mongodb")
        with pytest.raises(StorageError, match="Unknown storage backend"):
            get_ledger_store()
