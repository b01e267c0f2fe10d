"""
Tests for storage backends and transaction support
"""

import pytest
from datetime import datetime, timezone

from yield_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


# Test data
test_data = {
    "id": "0xalice",
    "holder": "0xalice",
    "balance": "1000000000000000000000000",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestStorageInterface:
    """Test base storage interface functionality"""

    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()

        # Test save and load
        storage.save("holders", "0xalice", test_data)
        loaded = storage.load("holders", "0xalice")
        assert loaded == test_data

        # Test exists
        assert storage.exists("holders", "0xalice")
        assert not storage.exists("holders", "non_existent")

        # Test load_all
        storage.save("holders", "0xbob", {"id": "0xbob", "holder": "0xbob"})
        assert len(storage.load_all("holders")) == 2

        # Test find
        results = storage.find("holders", {"holder": "0xalice"})
        assert len(results) == 1
        assert results[0]["balance"] == "1000000000000000000000000"

        # Test count and delete
        assert storage.count("holders") == 2
        assert storage.delete("holders", "0xalice")
        assert not storage.delete("holders", "0xalice")
        assert storage.count("holders") == 1

        storage.close()

    def test_in_memory_returns_copies(self):
        """Mutating a loaded record does not change storage"""
        storage = InMemoryStorage()
        storage.save("holders", "0xalice", {"balance": "1"})

        loaded = storage.load("holders", "0xalice")
        loaded["balance"] = "2"

        assert storage.load("holders", "0xalice")["balance"] == "1"

    def test_sqlite_storage_basic_operations(self, tmp_path):
        """Test basic CRUD operations with SQLiteStorage"""
        storage = SQLiteStorage(tmp_path / "test.db")

        storage.save("holders", "0xalice", test_data)
        assert storage.load("holders", "0xalice") == test_data
        assert storage.exists("holders", "0xalice")

        storage.save("holders", "0xbob", {"id": "0xbob", "holder": "0xbob"})
        assert [r["id"] for r in storage.load_all("holders")] == ["0xalice", "0xbob"]
        assert len(storage.find("holders", {"holder": "0xbob"})) == 1
        assert storage.count("holders") == 2

        assert storage.delete("holders", "0xbob")
        assert storage.count("holders") == 1

        storage.close()

    def test_sqlite_persistence(self, tmp_path):
        """Data survives reopening the database file"""
        db_path = tmp_path / "ledger.db"
        storage = SQLiteStorage(db_path)
        storage.save("deposit_records", "20", {"amount": "1000"})
        storage.close()

        reopened = SQLiteStorage(db_path)
        assert reopened.load("deposit_records", "20") == {"amount": "1000"}
        reopened.close()


class TestTransactions:
    """Test atomic blocks on every backend"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            backend = InMemoryStorage()
        else:
            backend = SQLiteStorage(tmp_path / "tx.db")
        yield backend
        backend.close()

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("holders", "0xalice", {"balance": "1"})
        assert storage.load("holders", "0xalice") == {"balance": "1"}

    def test_rollback_on_error(self, storage):
        storage.save("holders", "0xalice", {"balance": "1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("holders", "0xalice", {"balance": "2"})
                storage.save("holders", "0xbob", {"balance": "3"})
                storage.delete("holders", "0xalice")
                raise RuntimeError("abort")

        assert storage.load("holders", "0xalice") == {"balance": "1"}
        assert not storage.exists("holders", "0xbob")

    def test_nested_blocks_join_outer(self, storage):
        """An inner block's success does not commit before the outer block"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("holders", "0xalice", {"balance": "1"})
                assert storage.exists("holders", "0xalice")
                raise RuntimeError("abort")

        assert not storage.exists("holders", "0xalice")

    def test_inner_failure_rolls_back_everything(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("holders", "0xalice", {"balance": "1"})
                with storage.atomic():
                    storage.save("holders", "0xbob", {"balance": "2"})
                    raise ValueError("abort")

        assert storage.count("holders") == 0

    def test_usable_after_rollback(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "a", {"v": 1})
                raise RuntimeError("abort")

        with storage.atomic():
            storage.save("fresh_table", "b", {"v": 2})
        assert storage.load("fresh_table", "b") == {"v": 2}
        assert storage.load("fresh_table", "a") is None


class TestStorageRecord:
    """Test record serialization helpers"""

    def test_round_trip_timestamps(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)

        data = record.to_dict()
        assert data["created_at"] == now.isoformat()
        assert StorageRecord.from_dict(data) == record


class TestCreateStorage:

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)
        assert isinstance(create_storage(""), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'url.db'}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(tmp_path / "url.db")
        storage.close()
