"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
import time
import os
import sqlite3
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_core.currency import Money
from lending_core.lifecycle import LoanStatus
from lending_core.loans import Loan, PaymentMethod, Repayment
from lending_core.storage import InMemoryStorage, RecordLocks, SQLiteStorage


record = {"id": "rec_001", "name": "Test Record", "amount": "100"}


class StorageContract:
    """Behaviour every engine must share"""

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        """Test basic CRUD operations"""
        self.storage.save("things", "rec_001", record)
        assert self.storage.load("things", "rec_001") == record
        assert self.storage.exists("things", "rec_001")
        assert not self.storage.exists("things", "missing")
        assert self.storage.load("things", "missing") is None

        self.storage.save("things", "rec_002", {"id": "rec_002", "name": "Other"})
        assert self.storage.count("things") == 2
        assert len(self.storage.load_all("things")) == 2
        assert self.storage.find("things", {"name": "Other"})[0]["id"] == "rec_002"

        assert self.storage.delete("things", "rec_001")
        assert not self.storage.delete("things", "rec_001")
        assert self.storage.count("things") == 1

        self.storage.clear_table("things")
        assert self.storage.count("things") == 0

    def test_atomic_commit(self):
        with self.storage.atomic():
            self.storage.save("things", "a", {"id": "a"})
            self.storage.save("things", "b", {"id": "b"})
        assert self.storage.count("things") == 2

    def test_atomic_rollback_restores_previous_state(self):
        self.storage.save("things", "a", {"id": "a", "value": 1})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("things", "a", {"id": "a", "value": 2})
                self.storage.save("things", "b", {"id": "b"})
                self.storage.delete("things", "a")
                raise RuntimeError("boom")

        assert self.storage.load("things", "a") == {"id": "a", "value": 1}
        assert not self.storage.exists("things", "b")

    def test_nested_rollback_keeps_outer_writes(self):
        with self.storage.atomic():
            self.storage.save("things", "outer", {"id": "outer"})
            with pytest.raises(ValueError):
                with self.storage.atomic():
                    self.storage.save("things", "inner", {"id": "inner"})
                    raise ValueError("inner failure")

        assert self.storage.exists("things", "outer")
        assert not self.storage.exists("things", "inner")

    def test_sequences(self):
        assert self.storage.next_sequence("receipts") == 1
        assert self.storage.next_sequence("receipts") == 2
        assert self.storage.next_sequence("loans") == 1

    def test_concurrent_sequences_are_unique(self):
        values = []
        lock = threading.Lock()

        def allocate():
            for _ in range(25):
                value = self.storage.next_sequence("receipts")
                with lock:
                    values.append(value)

        threads = [threading.Thread(target=allocate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(values) == list(range(1, 201))

    def test_record_lock_serializes_read_modify_write(self):
        self.storage.save("counters", "c", {"id": "c", "value": 0})

        def increment():
            for _ in range(20):
                with self.storage.locked("counters", "c"):
                    current = self.storage.load("counters", "c")["value"]
                    time.sleep(0)
                    self.storage.save("counters", "c", {"id": "c", "value": current + 1})

        threads = [threading.Thread(target=increment) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.storage.load("counters", "c")["value"] == 100


class TestInMemoryStorage(StorageContract):
    """In-memory engine"""

    def make_storage(self):
        return InMemoryStorage()

    def test_returns_copies(self):
        data = {"id": "x", "items": [1, 2]}
        self.storage.save("things", "x", data)
        data["items"].append(3)

        loaded = self.storage.load("things", "x")
        loaded["items"].append(4)
        assert self.storage.load("things", "x")["items"] == [1, 2]

    def test_rollback_only_undoes_own_thread(self):
        """Another thread's committed write survives a rollback"""
        started = threading.Event()
        written = threading.Event()

        def other_writer():
            started.wait()
            self.storage.save("things", "other", {"id": "other"})
            written.set()

        thread = threading.Thread(target=other_writer)
        thread.start()

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("things", "mine", {"id": "mine"})
                started.set()
                written.wait()
                raise RuntimeError("rollback")
        thread.join()

        assert self.storage.exists("things", "other")
        assert not self.storage.exists("things", "mine")


class TestSQLiteStorage(StorageContract):
    """SQLite engine on a temporary file"""

    def make_storage(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "lending.db")
        return SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()
        self.tmpdir.cleanup()

    def test_data_persists_across_connections(self):
        self.storage.save("things", "a", {"id": "a", "amount": "1083096"})
        self.storage.next_sequence("receipts")
        self.storage.close()

        self.storage = SQLiteStorage(self.db_path)
        assert self.storage.load("things", "a") == {"id": "a", "amount": "1083096"}
        assert self.storage.next_sequence("receipts") == 2

    def test_rolled_back_sequence_is_reused(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.next_sequence("receipts")
                raise RuntimeError("boom")
        assert self.storage.next_sequence("receipts") == 1


class TestRecordSerialization:
    """StorageRecord to_dict / from_dict"""

    def test_loan_round_trip(self):
        now = datetime.now(timezone.utc)
        loan = Loan(
            id="loan-1", created_at=now, updated_at=now,
            loan_number="LN001", application_id="app-1", borrower_id="b-1",
            principal=Money(1000000), interest_rate=Decimal('15'), term_months=12,
            monthly_payment=Money(90258), total_amount=Money(1083096), total_interest=Money(83096),
            outstanding_balance=Money(1083096), status=LoanStatus.APPROVED,
            next_payment_date=date(2024, 7, 1), next_payment_amount=Money(90258),
        )

        data = loan.to_dict()
        assert data["principal"] == {"amount": "1000000", "currency": "UGX"}
        assert data["status"] == "APPROVED"
        assert data["next_payment_date"] == "2024-07-01"
        assert data["interest_rate"] == "15"
        assert data["closed_at"] is None

        assert Loan.from_dict(data) == loan

    def test_unknown_keys_ignored(self):
        now = datetime.now(timezone.utc)
        repayment = Repayment(
            id="r-1", created_at=now, updated_at=now,
            receipt_number="REC001", receipt_sequence=1, loan_id="loan-1", borrower_id="b-1",
            amount=Money(1000), applied_amount=Money(1000), unapplied_amount=Money(0),
            balance_after=Money(5000), payment_date=date(2024, 7, 1), method=PaymentMethod.MOBILE_MONEY,
        )
        data = repayment.to_dict()
        data["legacy_field"] = "ignored"

        restored = Repayment.from_dict(data)
        assert restored.method is PaymentMethod.MOBILE_MONEY
        assert restored.payment_date == date(2024, 7, 1)
        assert restored.created_at == now


class FailingCommitConnection:
    """Wraps a sqlite3 connection whose next commit() fails"""

    def __init__(self, connection):
        self._connection = connection
        self.fail_next_commit = True

    def commit(self):
        if self.fail_next_commit:
            self.fail_next_commit = False
            raise sqlite3.OperationalError("database is locked")
        self._connection.commit()

    def __getattr__(self, name):
        return getattr(self._connection, name)


class TestSQLiteCommitFailure:
    """A transaction whose commit fails leaves nothing behind"""

    def setup_method(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "lending.db")
        self.storage = SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()
        self.tmpdir.cleanup()

    def committed_ids(self, table):
        reader = sqlite3.connect(self.db_path)
        try:
            return sorted(row[0] for row in reader.execute(f"SELECT id FROM {table}"))
        finally:
            reader.close()

    def test_failed_commit_is_rolled_back(self):
        self.storage.save("loans", "existing", {"id": "existing"})
        self.storage._connection = FailingCommitConnection(self.storage._connection)

        with pytest.raises(sqlite3.OperationalError):
            with self.storage.atomic():
                self.storage.save("loans", "failed-op", {"id": "failed-op"})

        # The next autocommitted write must not carry the failed work with it
        self.storage.save("loans", "other", {"id": "other"})

        assert self.committed_ids("loans") == ["existing", "other"]
        assert not self.storage.exists("loans", "failed-op")

    def test_storage_usable_from_other_threads_after_failure(self):
        self.storage._connection = FailingCommitConnection(self.storage._connection)
        with pytest.raises(sqlite3.OperationalError):
            with self.storage.atomic():
                self.storage.save("things", "a", {"id": "a"})

        thread = threading.Thread(target=self.storage.save, args=("things", "b", {"id": "b"}))
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert self.committed_ids("things") == ["b"]


class TestRecordLocks:
    """Lock registry entries are dropped once released"""

    def test_entries_removed_after_use(self):
        locks = RecordLocks()
        with locks.hold("borrower_phone", "0772123456"):
            with locks.hold("borrower_phone", "0772123456"):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_storage_does_not_accumulate_locks(self):
        storage = InMemoryStorage()
        for i in range(50):
            with storage.locked("loans", f"loan-{i}"):
                storage.save("loans", f"loan-{i}", {"id": f"loan-{i}"})
        assert len(storage._record_locks) == 0

    def test_waiters_share_one_lock(self):
        locks = RecordLocks()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("loans", "l-1"):
                order.append("first")
                entered.set()
                release.wait()

        def second():
            entered.wait()
            with locks.hold("loans", "l-1"):
                order.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()
        entered.wait()
        time.sleep(0.05)
        assert order == ["first"]
        release.set()
        for thread in threads:
            thread.join()

        assert order == ["first", "second"]
        assert len(locks) == 0
