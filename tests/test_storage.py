"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import os
import threading
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass

from loan_engine.exceptions import ConcurrencyConflictError, StorageFailureError
from loan_engine.storage import InMemoryStorage, SQLiteStorage, StorageRecord


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each backend, fresh per test"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageOperations:
    """Test CRUD operations on every backend"""

    def test_basic_operations(self, storage):
        """Test save, load, exists, find, count, delete"""
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"name": "Test Record"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.load("test_table", "record_1") is None

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_loaded_records_are_copies(self, storage):
        """Mutating a loaded record never changes stored state"""
        storage.save("test_table", "record_1", {"id": "record_1", "items": [1, 2]})
        loaded = storage.load("test_table", "record_1")
        loaded["items"].append(3)
        assert storage.load("test_table", "record_1")["items"] == [1, 2]

    def test_find_missing_key_does_not_match(self, storage):
        storage.save("test_table", "record_1", {"id": "record_1"})
        assert storage.find("test_table", {"status": "pending"}) == []


class TestTransactions:
    """Test atomic() semantics on every backend"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("test_table", "a", {"id": "a"})
            storage.save("test_table", "b", {"id": "b"})
        assert storage.count("test_table") == 2
        assert not storage.in_transaction()

    def test_rollback_on_error(self, storage):
        """An exception inside atomic() discards every write"""
        storage.save("test_table", "a", {"id": "a", "value": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a", "value": 2})
                storage.save("test_table", "b", {"id": "b"})
                storage.delete("test_table", "a")
                raise RuntimeError("boom")

        assert storage.load("test_table", "a") == {"id": "a", "value": 1}
        assert not storage.exists("test_table", "b")
        assert not storage.in_transaction()

    def test_reads_see_own_writes(self, storage):
        storage.save("test_table", "a", {"id": "a"})
        with storage.atomic():
            storage.save("test_table", "b", {"id": "b"})
            storage.delete("test_table", "a")
            assert storage.exists("test_table", "b")
            assert not storage.exists("test_table", "a")
            assert storage.count("test_table") == 1

    def test_nested_atomic_joins_outer(self, storage):
        """Only the outermost block decides commit or rollback"""
        with pytest.raises(ValueError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("test_table", "inner", {"id": "inner"})
                raise ValueError("outer failure")
        assert not storage.exists("test_table", "inner")


class TestInMemoryIsolation:
    """Test staged writes are invisible to other threads until commit"""

    def test_uncommitted_writes_invisible(self):
        storage = InMemoryStorage()
        seen = {}
        staged = threading.Event()
        checked = threading.Event()

        def writer():
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a"})
                staged.set()
                checked.wait(timeout=5)

        thread = threading.Thread(target=writer)
        thread.start()
        staged.wait(timeout=5)
        seen["during"] = storage.exists("test_table", "a")
        checked.set()
        thread.join(timeout=5)
        seen["after"] = storage.exists("test_table", "a")

        assert seen == {"during": False, "after": True}

    def test_snapshot_pins_committed_state(self):
        storage = InMemoryStorage()
        storage.save("test_table", "a", {"id": "a"})

        with storage.snapshot():
            thread = threading.Thread(
                target=lambda: storage.save("test_table", "b", {"id": "b"})
            )
            thread.start()
            thread.join(timeout=5)
            assert storage.count("test_table") == 1

        assert storage.count("test_table") == 2

    def test_expectation_rechecked_at_commit(self):
        """A write committed by another thread after the check still conflicts"""
        storage = InMemoryStorage()
        storage.save("test_table", "a", {"id": "a", "version": 1})

        def bump():
            storage.save("test_table", "a", {"id": "a", "version": 2})

        with pytest.raises(ConcurrencyConflictError):
            with storage.atomic():
                storage.expect("test_table", "a", "version", 1)
                storage.save("test_table", "a", {"id": "a", "version": 2, "writer": "first"})
                storage.save("test_table", "b", {"id": "b"})
                thread = threading.Thread(target=bump)
                thread.start()
                thread.join(timeout=5)

        assert storage.load("test_table", "a") == {"id": "a", "version": 2}
        assert not storage.exists("test_table", "b")
        assert not storage.in_transaction()


class TestExpectations:
    """Test record preconditions on both backends"""

    def test_expectation_met(self, storage):
        storage.save("test_table", "a", {"id": "a", "version": 3})
        with storage.atomic():
            storage.expect("test_table", "a", "version", 3)
            storage.save("test_table", "a", {"id": "a", "version": 4})
        assert storage.load("test_table", "a")["version"] == 4

    def test_expectation_failed(self, storage):
        storage.save("test_table", "a", {"id": "a", "version": 3})
        with pytest.raises(ConcurrencyConflictError):
            storage.expect("test_table", "a", "version", 2)
        with pytest.raises(ConcurrencyConflictError):
            storage.expect("test_table", "missing", "version", 0)


class TestSQLiteStorage:
    """Test SQLite-specific behaviour"""

    def test_persistence_across_connections(self):
        """Test data survives reopening the database file"""
        with tempfile.TemporaryDirectory() as tmp_dir:
            db_path = os.path.join(tmp_dir, "loans.db")

            storage = SQLiteStorage(db_path)
            storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()

    def test_closed_storage_raises_storage_failure(self):
        storage = SQLiteStorage(":memory:")
        storage.close()
        with pytest.raises(StorageFailureError) as exc_info:
            storage.save("test_table", "a", {"id": "a"})
        assert exc_info.value.retriable


class TestStorageRecord:
    """Test record serialization"""

    def test_to_dict_serializes_values(self):
        @dataclass
        class Sample(StorageRecord):
            amount: Decimal
            due_date: date

        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        record = Sample(id="s1", created_at=now, updated_at=now,
                        amount=Decimal('10.50'), due_date=date(2025, 2, 1))
        data = record.to_dict()

        assert data["amount"] == "10.50"
        assert data["due_date"] == "2025-02-01"
        assert data["created_at"] == now.isoformat()
