"""
Tests for storage backends, transactions and compare-and-swap
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from voucher_ledger.storage import InMemoryStorage, SQLiteStorage


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "version": 0,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestInMemoryStorage:
    """Test InMemoryStorage behaviour"""

    def test_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()

        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "missing")

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert len(storage.load_all("test_table")) == 2
        assert storage.count("test_table") == 2

        results = storage.find("test_table", {"name": "Other"})
        assert len(results) == 1
        assert results[0]["id"] == "record_2"

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

    def test_loaded_records_are_copies(self):
        """Test that mutating a loaded record does not change storage"""
        storage = InMemoryStorage()
        storage.save("t", "r1", {"id": "r1", "items": [1, 2]})

        loaded = storage.load("t", "r1")
        loaded["items"].append(3)

        assert storage.load("t", "r1")["items"] == [1, 2]

    def test_compare_and_swap(self):
        """Test version-checked writes"""
        storage = InMemoryStorage()
        storage.save("t", "r1", {"id": "r1", "version": 3, "value": "a"})

        assert not storage.compare_and_swap("t", "r1", 2, {"id": "r1", "version": 3, "value": "b"})
        assert storage.load("t", "r1")["value"] == "a"

        assert storage.compare_and_swap("t", "r1", 3, {"id": "r1", "version": 4, "value": "b"})
        assert storage.load("t", "r1") == {"id": "r1", "version": 4, "value": "b"}

    def test_compare_and_swap_missing_record(self):
        """Test CAS against a record that does not exist"""
        storage = InMemoryStorage()
        assert not storage.compare_and_swap("t", "nope", 0, {"id": "nope", "version": 1})
        assert not storage.exists("t", "nope")

    def test_atomic_rollback(self):
        """Test that an exception inside atomic() discards every write"""
        storage = InMemoryStorage()
        storage.save("t", "r1", {"id": "r1", "value": "before"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "r1", {"id": "r1", "value": "after"})
                storage.save("t", "r2", {"id": "r2"})
                raise RuntimeError("boom")

        assert storage.load("t", "r1")["value"] == "before"
        assert not storage.exists("t", "r2")

    def test_nested_atomic_joins_outer(self):
        """Test that an inner block is rolled back with the outer one"""
        storage = InMemoryStorage()

        with pytest.raises(ValueError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                raise ValueError("outer failure")

        assert not storage.exists("t", "inner")

    def test_atomic_commit(self):
        """Test that a clean atomic block persists its writes"""
        storage = InMemoryStorage()
        with storage.atomic():
            storage.save("t", "r1", {"id": "r1"})
        assert storage.exists("t", "r1")

    def test_clear_table(self):
        """Test that clearing one table leaves the others alone"""
        storage = InMemoryStorage()
        storage.save("t", "r1", {"id": "r1"})
        storage.save("t", "r2", {"id": "r2"})
        storage.save("other", "o1", {"id": "o1"})

        storage.clear_table("t")

        assert storage.count("t") == 0
        assert storage.load_all("t") == []
        assert storage.exists("other", "o1")

    def test_rollback_restores_only_written_tables(self):
        """Test rollback of a modified table, a cleared table and a new table"""
        storage = InMemoryStorage()
        storage.save("accounts", "a1", {"id": "a1", "balance": "10.00"})
        storage.save("entries", "e1", {"id": "e1"})
        storage.save("untouched", "u1", {"id": "u1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "a1", {"id": "a1", "balance": "0.00"})
                storage.clear_table("entries")
                storage.save("created", "c1", {"id": "c1"})
                assert storage.count("created") == 1
                raise RuntimeError("boom")

        assert storage.load("accounts", "a1")["balance"] == "10.00"
        assert storage.exists("entries", "e1")
        assert storage.exists("untouched", "u1")
        assert storage.count("created") == 0

        # The next transaction starts from a clean slate
        with storage.atomic():
            storage.save("created", "c2", {"id": "c2"})
        assert storage.exists("created", "c2")


class TestSQLiteStorage:
    """Test SQLiteStorage behaviour"""

    def test_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            try:
                storage.save("test_table", "record_1", test_data)
                assert storage.load("test_table", "record_1") == test_data
                assert storage.exists("test_table", "record_1")
                assert storage.find("test_table", {"name": "Test Record"})[0]["id"] == "test_001"
                assert storage.count("test_table") == 1
                assert storage.delete("test_table", "record_1")
                assert storage.load("test_table", "record_1") is None
            finally:
                storage.close()

    def test_persistence_across_connections(self):
        """Test that data survives reopening the database"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "persist.db"
            storage = SQLiteStorage(db_path)
            storage.save("t", "r1", {"id": "r1", "value": "kept"})
            storage.close()

            reopened = SQLiteStorage(db_path)
            try:
                assert reopened.load("t", "r1")["value"] == "kept"
            finally:
                reopened.close()

    def test_compare_and_swap(self):
        """Test the conditional UPDATE on the version field"""
        storage = SQLiteStorage(":memory:")
        storage.save("t", "r1", {"id": "r1", "version": 1, "value": "a"})

        assert not storage.compare_and_swap("t", "r1", 0, {"id": "r1", "version": 2, "value": "b"})
        assert storage.load("t", "r1")["value"] == "a"

        assert storage.compare_and_swap("t", "r1", 1, {"id": "r1", "version": 2, "value": "b"})
        assert storage.load("t", "r1")["version"] == 2
        storage.close()

    def test_atomic_rollback(self):
        """Test that SQLite transactions roll back on exception"""
        storage = SQLiteStorage(":memory:")
        storage.save("t", "r1", {"id": "r1", "value": "before"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "r1", {"id": "r1", "value": "after"})
                raise RuntimeError("boom")

        assert storage.load("t", "r1")["value"] == "before"
        storage.close()

    def test_table_created_in_rolled_back_transaction(self):
        """Test that a table first used inside a failed transaction is usable afterwards"""
        storage = SQLiteStorage(":memory:")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", "r1", {"id": "r1"})
                raise RuntimeError("boom")

        storage.save("fresh", "r2", {"id": "r2"})
        assert storage.exists("fresh", "r2")
        assert not storage.exists("fresh", "r1")
        storage.close()

    def test_clear_table(self):
        """Test DELETE of every row, committed outside a transaction"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "clear.db"
            storage = SQLiteStorage(db_path)
            storage.save("t", "r1", {"id": "r1"})
            storage.save("t", "r2", {"id": "r2"})
            storage.save("other", "o1", {"id": "o1"})

            storage.clear_table("t")
            assert storage.count("t") == 0
            storage.close()

            reopened = SQLiteStorage(db_path)
            try:
                assert reopened.load_all("t") == []
                assert reopened.exists("other", "o1")
            finally:
                reopened.close()

    def test_clear_table_rolls_back(self):
        """Test that a clear inside a failed transaction is undone"""
        storage = SQLiteStorage(":memory:")
        storage.save("t", "r1", {"id": "r1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.clear_table("t")
                raise RuntimeError("boom")

        assert storage.exists("t", "r1")
        storage.close()
