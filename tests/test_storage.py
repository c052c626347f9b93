"""
Tests for storage backends and transaction support
"""

import pytest
from datetime import datetime, timezone
from pathlib import Path

from loan_engine.storage import InMemoryStorage, SQLiteStorage, create_storage


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
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageBackends:
    """Test CRUD operations shared by every backend"""
    
    def test_basic_operations(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")
        
        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2
        assert storage.count("test_table") == 2
        
        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1
        
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0
    
    def test_load_missing(self, storage):
        assert storage.load("test_table", "missing") is None
    
    def test_update_keeps_position(self, storage):
        storage.save("t", "a", {"id": "a", "v": 1})
        storage.save("t", "b", {"id": "b", "v": 1})
        storage.save("t", "a", {"id": "a", "v": 2})
        
        records = storage.load_all("t")
        assert [r["id"] for r in records] == ["a", "b"]
        assert records[0]["v"] == 2
    
    def test_find_matches_all_filters(self, storage):
        storage.save("t", "1", {"id": "1", "loan_id": "L1", "status": "active"})
        storage.save("t", "2", {"id": "2", "loan_id": "L1", "status": "settled"})
        storage.save("t", "3", {"id": "3", "loan_id": "L2", "status": "active"})
        
        assert [r["id"] for r in storage.find("t", {"loan_id": "L1"})] == ["1", "2"]
        assert [r["id"] for r in storage.find("t", {"loan_id": "L1", "status": "active"})] == ["1"]
        assert storage.find("t", {"loan_id": "L9"}) == []
    
    def test_loaded_records_are_copies(self, storage):
        storage.save("t", "1", {"id": "1", "tags": ["a"]})
        loaded = storage.load("t", "1")
        loaded["tags"].append("b")
        assert storage.load("t", "1")["tags"] == ["a"]
    
    def test_atomic_commits(self, storage):
        with storage.atomic():
            storage.save("t", "1", {"id": "1"})
            storage.save("t", "2", {"id": "2"})
        assert storage.count("t") == 2
    
    def test_atomic_rolls_back_on_error(self, storage):
        storage.save("t", "1", {"id": "1", "v": "before"})
        
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"id": "1", "v": "after"})
                storage.save("t", "2", {"id": "2"})
                raise RuntimeError("boom")
        
        assert storage.load("t", "1")["v"] == "before"
        assert not storage.exists("t", "2")
    
    def test_nested_atomic_rolls_back_with_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"id": "1"})
                with storage.atomic():
                    storage.save("t", "2", {"id": "2"})
                raise RuntimeError("boom")
        
        assert storage.count("t") == 0


class TestSQLitePersistence:
    """Test that SQLite data survives reopening"""
    
    def test_reopen(self, tmp_path: Path):
        db_path = tmp_path / "loans.db"
        storage = SQLiteStorage(db_path)
        storage.save("loans", "L1", {"id": "L1", "principal_amount": "1000000.00"})
        storage.close()
        
        reopened = SQLiteStorage(db_path)
        assert reopened.load("loans", "L1") == {"id": "L1", "principal_amount": "1000000.00"}
        reopened.close()
    
    def test_rolled_back_writes_not_persisted(self, tmp_path: Path):
        db_path = tmp_path / "loans.db"
        storage = SQLiteStorage(db_path)
        storage.save("loans", "L1", {"id": "L1"})
        
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("loans", "L2", {"id": "L2"})
                raise ValueError("validation failed")
        storage.close()
        
        reopened = SQLiteStorage(db_path)
        assert reopened.count("loans") == 1
        reopened.close()


class TestCreateStorage:
    """Test building storage from a database URL"""
    
    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)
    
    def test_sqlite_in_memory(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
    
    def test_sqlite_file(self, tmp_path: Path):
        storage = create_storage(f"sqlite:///{tmp_path}/engine.db")
        assert isinstance(storage, SQLiteStorage)
        storage.close()
    
    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/loans")
