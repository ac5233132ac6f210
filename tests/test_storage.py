"""
Test suite for storage module

Covers both backends, the exclusive transactional boundary, compare-and-swap
saves and bounded retries.
"""

import threading
import pytest
from datetime import datetime, timezone

from sfd_lending.exceptions import ConcurrentModificationError, StorageTimeoutError
from sfd_lending.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, transactional
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageInterface:
    """Basic CRUD on both backends"""

    def test_save_and_load(self, storage):
        storage.save("loans", "loan-1", {"id": "loan-1", "amount": "1000"})
        assert storage.load("loans", "loan-1") == {"id": "loan-1", "amount": "1000"}

    def test_load_missing(self, storage):
        assert storage.load("loans", "missing") is None

    def test_loaded_data_is_a_copy(self, storage):
        storage.save("loans", "loan-1", {"id": "loan-1", "amount": "1000"})
        data = storage.load("loans", "loan-1")
        data["amount"] = "0"
        assert storage.load("loans", "loan-1")["amount"] == "1000"

    def test_find_with_filters(self, storage):
        storage.save("loans", "a", {"id": "a", "sfd_id": "sfd-1", "status": "active"})
        storage.save("loans", "b", {"id": "b", "sfd_id": "sfd-1", "status": "pending"})
        storage.save("loans", "c", {"id": "c", "sfd_id": "sfd-2", "status": "active"})

        found = storage.find("loans", {"sfd_id": "sfd-1", "status": "active"})
        assert [row["id"] for row in found] == ["a"]
        assert len(storage.find("loans", {"sfd_id": "sfd-1"})) == 2

    def test_delete_exists_count(self, storage):
        storage.save("loans", "a", {"id": "a"})
        assert storage.exists("loans", "a")
        assert storage.count("loans") == 1
        assert storage.delete("loans", "a") is True
        assert storage.delete("loans", "a") is False
        assert not storage.exists("loans", "a")

    def test_clear_table(self, storage):
        storage.save("loans", "a", {"id": "a"})
        storage.clear_table("loans")
        assert storage.load_all("loans") == []


class TestTransactionSupport:
    """Test the atomic boundary"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("loans", "a", {"id": "a"})
        assert storage.exists("loans", "a")

    def test_rollback_discards_all_writes(self, storage):
        storage.save("loans", "a", {"id": "a", "amount": "1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "a", {"id": "a", "amount": "2"})
                storage.save("subsidy_usage", "u", {"id": "u"})
                raise RuntimeError("boom")

        assert storage.load("loans", "a")["amount"] == "1"
        assert not storage.exists("subsidy_usage", "u")

    def test_nested_boundary_joins_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "a", {"id": "a"})
                raise RuntimeError("outer fails")

        assert not storage.exists("loans", "a")

    def test_timeout_when_boundary_is_held(self, storage):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with storage.atomic():
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(StorageTimeoutError):
                with storage.atomic(timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join()


class TestVersionedSave:
    """Test compare-and-swap saves"""

    def test_new_record_starts_at_version_one(self, storage):
        assert storage.save_versioned("loans", "a", {"id": "a"}, 0) == 1
        assert storage.load("loans", "a")["version"] == 1

    def test_matching_version_increments(self, storage):
        storage.save_versioned("loans", "a", {"id": "a", "amount": "1"}, 0)
        assert storage.save_versioned("loans", "a", {"id": "a", "amount": "2"}, 1) == 2
        assert storage.load("loans", "a")["amount"] == "2"

    def test_stale_version_raises_and_writes_nothing(self, storage):
        storage.save_versioned("loans", "a", {"id": "a", "amount": "1"}, 0)
        storage.save_versioned("loans", "a", {"id": "a", "amount": "2"}, 1)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            storage.save_versioned("loans", "a", {"id": "a", "amount": "3"}, 1)

        assert exc_info.value.record_id == "a"
        assert storage.load("loans", "a")["amount"] == "2"


class TestTransactional:
    """Test bounded retries around the atomic boundary"""

    def test_retries_transient_conflicts(self):
        storage = InMemoryStorage()
        calls = []

        def operation():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrentModificationError("loans", "a")
            return "done"

        assert transactional(storage, operation, attempts=3) == "done"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self):
        storage = InMemoryStorage()

        def operation():
            storage.save("loans", "a", {"id": "a"})
            raise ConcurrentModificationError("loans", "a")

        with pytest.raises(ConcurrentModificationError) as exc_info:
            transactional(storage, operation, attempts=3)

        assert exc_info.value.attempts == 3
        assert not storage.exists("loans", "a")

    def test_business_errors_not_retried(self):
        storage = InMemoryStorage()
        calls = []

        def operation():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            transactional(storage, operation, attempts=3)
        assert len(calls) == 1


class TestStorageRecord:
    """Test record serialization"""

    def test_to_dict_serializes_datetimes(self):
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)
        record = StorageRecord(id="r", created_at=now, updated_at=now)
        assert record.to_dict()["created_at"] == now.isoformat()


class TestCreateStorage:
    """Test the database URL factory"""

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_file(self, tmp_path):
        backend = create_storage(f"sqlite:///{tmp_path / 'lending.db'}")
        try:
            assert isinstance(backend, SQLiteStorage)
            backend.save("loans", "a", {"id": "a"})
            assert backend.exists("loans", "a")
        finally:
            backend.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/lending")
