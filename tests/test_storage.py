"""
Tests for storage backends and atomic units of work
"""

import pytest
import sqlite3
import tempfile
import threading
import time
from pathlib import Path

from nivalus_bank.storage import (
    InMemoryStorage, SQLiteStorage, StorageError, StorageBusyError, create_storage
)


test_data = {"id": 1, "name": "Test Record", "amount": "100.50"}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage(lock_timeout=0.2)
    else:
        backend = SQLiteStorage(":memory:", lock_timeout=0.2)
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD operations shared by every backend"""

    def test_save_load_exists(self, storage):
        storage.save("records", 1, test_data)
        assert storage.load("records", 1) == test_data
        assert storage.exists("records", 1)
        assert not storage.exists("records", 2)
        assert storage.load("records", 2) is None

    def test_find_count_delete(self, storage):
        storage.save("records", 1, test_data)
        storage.save("records", 2, {"id": 2, "name": "Other", "amount": "1.00"})

        results = storage.find("records", {"name": "Other"})
        assert [r["id"] for r in results] == [2]
        assert storage.count("records") == 2

        assert storage.delete("records", 1)
        assert not storage.delete("records", 1)
        assert storage.count("records") == 1

    def test_loaded_records_are_copies(self, storage):
        storage.save("records", 1, test_data)
        loaded = storage.load("records", 1)
        loaded["name"] = "Mutated"
        assert storage.load("records", 1)["name"] == "Test Record"

    def test_next_id_is_monotonic_per_table(self, storage):
        assert storage.next_id("accounts") == 1
        assert storage.next_id("accounts") == 2
        assert storage.next_id("transactions") == 1

    def test_clear_table(self, storage):
        storage.save("records", 1, test_data)
        storage.clear_table("records")
        assert storage.count("records") == 0


class TestAtomic:
    """Atomic units of work"""

    def test_commit_makes_writes_visible(self, storage):
        with storage.atomic():
            storage.save("records", 1, test_data)
            assert storage.load("records", 1) == test_data
        assert storage.load("records", 1) == test_data
        assert not storage.in_transaction()

    def test_exception_rolls_back_every_write(self, storage):
        storage.save("records", 1, {"id": 1, "balance": "10.00"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("records", 1, {"id": 1, "balance": "0.00"})
                storage.save("records", 2, {"id": 2, "balance": "10.00"})
                raise RuntimeError("boom")

        assert storage.load("records", 1)["balance"] == "10.00"
        assert storage.load("records", 2) is None

    def test_nested_blocks_commit_once(self, storage):
        with storage.atomic():
            storage.save("records", 1, test_data)
            with storage.atomic():
                storage.save("records", 2, test_data)
            assert storage.in_transaction()
        assert storage.count("records") == 2

    def test_inner_rollback_dooms_outer_unit(self, storage):
        with pytest.raises(StorageError):
            with storage.atomic():
                storage.save("records", 1, test_data)
                try:
                    with storage.atomic():
                        raise ValueError("inner failure")
                except ValueError:
                    pass
        assert storage.load("records", 1) is None

    def test_lock_rows_requires_transaction(self, storage):
        with pytest.raises(StorageError):
            storage.lock_rows("records", [1])


class TestInMemoryConcurrency:
    """Row locks and isolation of the in-memory backend"""

    def setup_method(self):
        self.storage = InMemoryStorage(lock_timeout=0.1)
        self.locked = threading.Event()
        self.release = threading.Event()

    def _hold_lock(self, table, key):
        with self.storage.atomic():
            self.storage.lock_rows(table, [key])
            self.storage.save(table, key, {"id": key, "state": "pending"})
            self.locked.set()
            self.release.wait(5)

    def test_locked_row_times_out(self):
        holder = threading.Thread(target=self._hold_lock, args=("accounts", 1))
        holder.start()
        assert self.locked.wait(5)

        try:
            with pytest.raises(StorageBusyError):
                with self.storage.atomic():
                    self.storage.lock_rows("accounts", [1])
            assert not self.storage.in_transaction()
        finally:
            self.release.set()
            holder.join()

        # Lock is released once the holding unit commits
        with self.storage.atomic():
            self.storage.lock_rows("accounts", [1])

    def test_uncommitted_writes_are_invisible_to_other_threads(self):
        holder = threading.Thread(target=self._hold_lock, args=("accounts", 7))
        holder.start()
        assert self.locked.wait(5)

        try:
            assert self.storage.load("accounts", 7) is None
        finally:
            self.release.set()
            holder.join()

        assert self.storage.load("accounts", 7) == {"id": 7, "state": "pending"}

    def test_relocking_held_row_is_a_no_op(self):
        with self.storage.atomic():
            self.storage.lock_rows("accounts", [2, 1])
            self.storage.lock_rows("accounts", [1])

    def test_row_locks_are_forgotten_once_released(self):
        with self.storage.atomic():
            self.storage.lock_rows("accounts", [1, 2])
            assert len(self.storage._row_locks) == 2
        assert self.storage._row_locks == {}

        holder = threading.Thread(target=self._hold_lock, args=("accounts", 3))
        holder.start()
        assert self.locked.wait(5)
        try:
            with pytest.raises(StorageBusyError):
                with self.storage.atomic():
                    self.storage.lock_rows("accounts", [3])
            assert list(self.storage._row_locks) == [("accounts", "3")]
        finally:
            self.release.set()
            holder.join()

        assert self.storage._row_locks == {}


class TestSQLitePersistence:
    """File-backed SQLite storage"""

    def test_data_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "nivalus.db"

            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("accounts", storage.next_id("accounts"), test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("accounts", 1) == test_data
            assert reopened.next_id("accounts") == 2
            reopened.close()

    def test_other_thread_cannot_begin_while_unit_is_open(self):
        storage = SQLiteStorage(":memory:", lock_timeout=0.1)
        errors = []

        def try_begin():
            try:
                storage.begin_transaction()
            except StorageBusyError as e:
                errors.append(e)

        with storage.atomic():
            worker = threading.Thread(target=try_begin)
            worker.start()
            worker.join()

        assert len(errors) == 1
        storage.close()

    def test_failed_commit_rolls_back_the_unit(self, monkeypatch):
        storage = SQLiteStorage(":memory:", lock_timeout=0.5)
        storage.save("records", 1, {"id": 1, "balance": "10.00"})
        real_commit = storage._commit
        failures = ["database is locked"]

        def flaky_commit():
            if failures:
                raise sqlite3.OperationalError(failures.pop())
            real_commit()

        monkeypatch.setattr(storage, "_commit", flaky_commit)

        with pytest.raises(sqlite3.OperationalError):
            with storage.atomic():
                storage.save("records", 1, {"id": 1, "balance": "0.00"})

        assert not storage.in_transaction()
        assert not storage._connection.in_transaction
        assert storage.load("records", 1)["balance"] == "10.00"

        with storage.atomic():
            storage.save("records", 1, {"id": 1, "balance": "5.00"})
        assert storage.load("records", 1)["balance"] == "5.00"
        storage.close()

    def test_standalone_read_waits_for_open_unit(self):
        storage = SQLiteStorage(":memory:", lock_timeout=2.0)
        storage.save("records", 1, {"id": 1, "balance": "10.00"})
        started = threading.Event()
        seen = []

        def read_during_unit():
            started.set()
            seen.append(storage.load("records", 1)["balance"])

        with storage.atomic():
            storage.save("records", 1, {"id": 1, "balance": "4.00"})
            reader = threading.Thread(target=read_during_unit)
            reader.start()
            assert started.wait(5)
            time.sleep(0.05)
            assert seen == []

        reader.join()
        assert seen == ["4.00"]
        storage.close()


class TestCreateStorage:
    """Backend selection from database URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "bank.db"
            storage = create_storage(f"sqlite:///{db_path}", lock_timeout=1.0)
            assert storage.db_path == str(db_path)
            assert storage.lock_timeout == 1.0
            storage.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/bank")
