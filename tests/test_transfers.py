"""
Test suite for the transfer processor

Covers atomicity, conservation, entry correctness, lock ordering,
deadlock freedom and lost-update safety under concurrent transfers,
rollback on injected failure and the optional preconditions.
"""

import logging
import sqlite3
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_engine.config import LedgerConfig
from ledger_engine.errors import (
    LedgerError, RetryableError, ConstraintViolationError, NotFoundError, LockWaitTimeoutError,
    SerializationFailureError, InsufficientFundsError, CurrencyMismatchError,
    TransferCancelledError,
)
from ledger_engine.migrations import ensure_schema
from ledger_engine.models import TransferRequest
from ledger_engine.storage import SQLiteLedgerStore, Queries
from ledger_engine.transfers import TransferProcessor, ordered_pair, retry_on_contention


class TestOrderedPair:
    """Lock-acquisition order"""

    def test_smaller_id_first(self):
        """Test that direction does not change the order"""
        assert ordered_pair(1, 2) == (1, 2)
        assert ordered_pair(2, 1) == (1, 2)
        assert ordered_pair(10, 3) == ordered_pair(3, 10)


class TransferTestCase:
    """Migrated SQLite store with three funded accounts"""

    config = LedgerConfig()

    def setup_method(self):
        self._temp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteLedgerStore(Path(self._temp_dir.name) / "ledger.db")
        ensure_schema(self.store)
        self.processor = TransferProcessor(self.store, self.config)

        self.account_a = self.store.create_account("alice", Decimal("1000"), "USD")
        self.account_b = self.store.create_account("bob", Decimal("0"), "USD")
        self.account_c = self.store.create_account("carol", Decimal("500"), "EUR")

    def teardown_method(self):
        self.store.close()
        self._temp_dir.cleanup()

    def balance(self, account_id: int) -> Decimal:
        return self.store.get_account(account_id).balance

    def assert_nothing_written(self):
        assert self.store.count("transfers") == 0
        assert self.store.count("entries") == 0
        assert self.balance(self.account_a.id) == Decimal("1000")
        assert self.balance(self.account_b.id) == Decimal("0")


class TestTransfer(TransferTestCase):
    """Single transfers"""

    def test_transfer_result(self):
        """Test that the result carries the transfer, entries and updated accounts"""
        result = self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("150.25"))

        assert result.transfer.from_account_id == self.account_a.id
        assert result.transfer.to_account_id == self.account_b.id
        assert result.transfer.amount == Decimal("150.25")

        assert result.from_entry.account_id == self.account_a.id
        assert result.from_entry.amount == Decimal("-150.25")
        assert result.to_entry.account_id == self.account_b.id
        assert result.to_entry.amount == Decimal("150.25")

        assert result.from_account.id == self.account_a.id
        assert result.from_account.balance == Decimal("849.75")
        assert result.to_account.id == self.account_b.id
        assert result.to_account.balance == Decimal("150.25")

    def test_everything_is_persisted(self):
        """Test that one transfer row and two entries exist after commit"""
        result = self.processor.transfer(self.account_a.id, self.account_b.id, "10")

        assert self.store.get_transfer(result.transfer.id) == result.transfer
        assert self.store.list_entries(self.account_a.id) == [result.from_entry]
        assert self.store.list_entries(self.account_b.id) == [result.to_entry]
        assert self.store.count("transfers") == 1
        assert self.store.count("entries") == 2
        assert self.store.get_account(self.account_a.id) == result.from_account

    def test_conservation(self):
        """Test that the pair's total balance does not change"""
        before = self.balance(self.account_a.id) + self.balance(self.account_b.id)

        self.processor.transfer(self.account_a.id, self.account_b.id, "123.45")
        self.processor.transfer(self.account_b.id, self.account_a.id, "23.40")

        after = self.balance(self.account_a.id) + self.balance(self.account_b.id)
        assert after == before

    def test_balances_match_entries(self):
        """Test that balance changes equal the sum of each account's entries"""
        for amount in ("1", "2.5", "3.25"):
            self.processor.transfer(self.account_a.id, self.account_b.id, amount)
        self.processor.transfer(self.account_b.id, self.account_a.id, "0.75")

        for account_id, opening in ((self.account_a.id, Decimal("1000")), (self.account_b.id, Decimal("0"))):
            entries = self.store.list_entries(account_id)
            assert opening + sum(e.amount for e in entries) == self.balance(account_id)

    def test_execute_with_request(self):
        """Test execute with a TransferRequest"""
        request = TransferRequest(self.account_a.id, self.account_b.id, "5")

        result = self.processor.execute(request)

        assert result.transfer.amount == Decimal("5")

    def test_invalid_requests(self):
        """Test that non-positive amounts and self-transfers are refused"""
        with pytest.raises(ValueError):
            self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("0"))
        with pytest.raises(ValueError):
            self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("-1"))
        with pytest.raises(ValueError):
            self.processor.transfer(self.account_a.id, self.account_a.id, Decimal("1"))

        self.assert_nothing_written()

    def test_unknown_account_rolls_back(self):
        """Test that a missing destination aborts the whole transfer"""
        with pytest.raises(ConstraintViolationError):
            self.processor.transfer(self.account_a.id, 999, Decimal("10"))

        self.assert_nothing_written()

    def test_completed_transfer_is_logged(self, caplog):
        """Test the structured completion record"""
        with caplog.at_level(logging.INFO, logger="ledger.transfers"):
            result = self.processor.transfer(self.account_a.id, self.account_b.id, "1",
                                             correlation_id="req-1")

        records = [r for r in caplog.records if getattr(r, "action", None) == "transfer"]
        assert records
        assert records[-1].resource == f"transfer:{result.transfer.id}"
        assert records[-1].correlation_id == "req-1"


class TestLockOrdering(TransferTestCase):
    """Balance rows are always mutated smaller id first"""

    def record_mutation_order(self, monkeypatch):
        order = []
        original = Queries.add_account_balance

        def spy(queries, account_id, delta):
            order.append(account_id)
            return original(queries, account_id, delta)

        monkeypatch.setattr(Queries, "add_account_balance", spy)
        return order

    def test_forward_direction(self, monkeypatch):
        """Test lower id -> higher id"""
        order = self.record_mutation_order(monkeypatch)

        self.processor.transfer(self.account_a.id, self.account_b.id, "1")

        assert order == [self.account_a.id, self.account_b.id]

    def test_reverse_direction(self, monkeypatch):
        """Test higher id -> lower id still locks the lower id first"""
        self.processor.transfer(self.account_a.id, self.account_b.id, "10")
        order = self.record_mutation_order(monkeypatch)

        result = self.processor.transfer(self.account_b.id, self.account_a.id, "4")

        assert order == [self.account_a.id, self.account_b.id]
        assert result.from_account.id == self.account_b.id
        assert result.from_account.balance == Decimal("6")
        assert result.to_account.balance == Decimal("994")


class TestFailureInjection(TransferTestCase):
    """Rollback when a step fails mid-transfer"""

    def test_failure_before_second_balance_mutation(self, monkeypatch):
        """Test that nothing survives a failure between the two balance updates"""
        original = Queries.add_account_balance
        calls = []

        def failing(queries, account_id, delta):
            calls.append(account_id)
            if len(calls) == 2:
                raise RuntimeError("injected failure")
            return original(queries, account_id, delta)

        monkeypatch.setattr(Queries, "add_account_balance", failing)

        with pytest.raises(RuntimeError, match="injected failure"):
            self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("10"))

        self.assert_nothing_written()

    def test_failure_after_entry_creation(self, monkeypatch):
        """Test that entries already inserted are rolled back"""
        original = Queries.create_entry
        calls = []

        def failing(queries, account_id, amount):
            entry = original(queries, account_id, amount)
            calls.append(entry)
            if len(calls) == 2:
                raise ConstraintViolationError("injected")
            return entry

        monkeypatch.setattr(Queries, "create_entry", failing)

        with pytest.raises(ConstraintViolationError):
            self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("10"))

        self.assert_nothing_written()

    def test_cancelled_transfer(self):
        """Test that a pre-cancelled transfer writes nothing"""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(TransferCancelledError):
            self.processor.transfer(self.account_a.id, self.account_b.id, "1", cancel_event=cancel)

        self.assert_nothing_written()


class TestConcurrency(TransferTestCase):
    """Concurrent transfers on overlapping accounts"""

    def test_opposite_directions_do_not_deadlock(self):
        """Test 10 A->B interleaved with 10 B->A, amount 10 each"""
        initial_a = self.balance(self.account_a.id)
        initial_b = self.balance(self.account_b.id)
        transfers_before = self.store.count("transfers")
        entries_before = self.store.count("entries")

        pairs = []
        for _ in range(10):
            pairs.append((self.account_a.id, self.account_b.id))
            pairs.append((self.account_b.id, self.account_a.id))

        with ThreadPoolExecutor(max_workers=len(pairs)) as executor:
            futures = [
                executor.submit(self.processor.transfer, src, dst, Decimal("10"))
                for src, dst in pairs
            ]
            results = [f.result(timeout=60) for f in futures]

        assert len(results) == 20
        assert self.balance(self.account_a.id) == initial_a
        assert self.balance(self.account_b.id) == initial_b
        assert self.store.count("transfers") - transfers_before == 20
        assert self.store.count("entries") - entries_before == 40

    def test_cycle_of_three_accounts(self):
        """Test concurrent A->B, B->C, C->A rings"""
        totals_before = sum(self.balance(a.id) for a in (self.account_a, self.account_b, self.account_c))
        ring = [
            (self.account_a.id, self.account_b.id),
            (self.account_b.id, self.account_c.id),
            (self.account_c.id, self.account_a.id),
        ]

        with ThreadPoolExecutor(max_workers=15) as executor:
            futures = [
                executor.submit(self.processor.transfer, src, dst, Decimal("1"))
                for _ in range(5) for src, dst in ring
            ]
            for f in futures:
                f.result(timeout=60)

        totals_after = sum(self.balance(a.id) for a in (self.account_a, self.account_b, self.account_c))
        assert totals_after == totals_before
        assert self.store.count("transfers") == 15

    def test_no_lost_updates(self):
        """Test 100 concurrent transfers of 1 from A (1000) to B (0)"""
        with ThreadPoolExecutor(max_workers=25) as executor:
            futures = [
                executor.submit(self.processor.transfer, self.account_a.id, self.account_b.id, Decimal("1"))
                for _ in range(100)
            ]
            for f in futures:
                f.result(timeout=60)

        assert self.balance(self.account_a.id) == Decimal("900")
        assert self.balance(self.account_b.id) == Decimal("100")
        assert self.store.count("transfers") == 100
        assert self.store.count("entries") == 200


class TestCurrencyPrecondition(TransferTestCase):
    """enforce_currency_match"""

    config = LedgerConfig(enforce_currency_match=True)

    def test_mismatch_is_refused(self):
        """Test that USD -> EUR is rejected and nothing is written"""
        with pytest.raises(CurrencyMismatchError) as exc_info:
            self.processor.transfer(self.account_a.id, self.account_c.id, "1")

        assert exc_info.value.from_currency == "USD"
        assert exc_info.value.to_currency == "EUR"
        assert self.store.count("transfers") == 0
        assert self.balance(self.account_c.id) == Decimal("500")

    def test_unknown_account(self):
        """Test NotFoundError when the precondition reads a missing account"""
        with pytest.raises(NotFoundError):
            self.processor.transfer(self.account_a.id, 999, "1")

    def test_same_currency_passes(self):
        """Test that matching currencies transfer normally"""
        result = self.processor.transfer(self.account_a.id, self.account_b.id, "1")
        assert result.to_account.balance == Decimal("1")

    def test_constructor_override(self):
        """Test that the flag can be switched off per processor"""
        processor = TransferProcessor(self.store, self.config, enforce_currency_match=False)
        result = processor.transfer(self.account_a.id, self.account_c.id, "1")
        assert result.to_account.balance == Decimal("501")


class TestSufficientFundsPrecondition(TransferTestCase):
    """enforce_sufficient_funds"""

    config = LedgerConfig(enforce_sufficient_funds=True)

    def test_overdraft_is_refused(self):
        """Test that the transfer is rolled back when the source would go negative"""
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.processor.transfer(self.account_b.id, self.account_a.id, "0.01")

        assert exc_info.value.account_id == self.account_b.id
        assert exc_info.value.balance == Decimal("-0.01")
        self.assert_nothing_written()

    def test_exact_balance_allowed(self):
        """Test that draining an account to zero is allowed"""
        result = self.processor.transfer(self.account_a.id, self.account_b.id, "1000")
        assert result.from_account.balance == Decimal("0")

    def test_concurrent_drain_never_overdraws(self):
        """Test 30 concurrent transfers of 50 from a 1000 balance"""
        def attempt():
            try:
                self.processor.transfer(self.account_a.id, self.account_b.id, Decimal("50"))
                return True
            except InsufficientFundsError:
                return False

        with ThreadPoolExecutor(max_workers=10) as executor:
            outcomes = list(executor.map(lambda _: attempt(), range(30)))

        assert outcomes.count(True) == 20
        assert self.balance(self.account_a.id) == Decimal("0")
        assert self.balance(self.account_b.id) == Decimal("1000")


@pytest.mark.ambiguous
class TestDefaultOverdraftPolicy(TransferTestCase):
    """
    Whether a transfer may overdraw its source is not decided by the engine
    by default. These tests only check that whatever happens is consistent.
    """

    def test_overdraft_outcome_is_consistent(self):
        """Test atomicity and conservation for an overdrawing transfer"""
        before = self.balance(self.account_a.id) + self.balance(self.account_b.id)

        try:
            self.processor.transfer(self.account_b.id, self.account_a.id, "5")
        except LedgerError:
            self.assert_nothing_written()
        else:
            assert self.store.count("transfers") == 1
            assert self.store.count("entries") == 2

        after = self.balance(self.account_a.id) + self.balance(self.account_b.id)
        assert after == before


class TestRetryOnContention:
    """retry_on_contention helper"""

    def test_retries_until_success(self):
        """Test that retryable errors are retried"""
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise LockWaitTimeoutError("locked")
            return "done"

        assert retry_on_contention(operation, attempts=3, backoff_seconds=0) == "done"
        assert len(attempts) == 3

    def test_gives_up_after_attempts(self):
        """Test that the last retryable error propagates"""
        def operation():
            raise SerializationFailureError("conflict")

        with pytest.raises(SerializationFailureError):
            retry_on_contention(operation, attempts=2, backoff_seconds=0)

    def test_non_retryable_errors_propagate_immediately(self):
        """Test that other errors are not retried"""
        attempts = []

        def operation():
            attempts.append(1)
            raise ConstraintViolationError("fk")

        with pytest.raises(ConstraintViolationError):
            retry_on_contention(operation, attempts=5, backoff_seconds=0)

        assert len(attempts) == 1

    def test_invalid_attempts(self):
        """Test that attempts must be positive"""
        with pytest.raises(ValueError):
            retry_on_contention(lambda: None, attempts=0)


class TestCancelWhileBlocked(TransferTestCase):
    """Cancelling a transfer that is waiting for the write lock"""

    def setup_method(self):
        super().setup_method()
        self.store.busy_timeout = 3.0
        self.blocker = sqlite3.connect(str(self.store.db_path), isolation_level=None)
        self.blocker.execute("BEGIN IMMEDIATE")

    def teardown_method(self):
        if self.blocker.in_transaction:
            self.blocker.execute("ROLLBACK")
        self.blocker.close()
        super().teardown_method()

    def test_cancel_is_prompt_and_not_retryable(self):
        """Test that the blocked transfer raises TransferCancelledError long before the busy timeout"""
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        started = time.monotonic()
        with pytest.raises(TransferCancelledError) as exc_info:
            self.processor.transfer(self.account_a.id, self.account_b.id, "10", cancel_event=cancel)

        assert exc_info.value.reason == "cancelled"
        assert not isinstance(exc_info.value, RetryableError)
        assert time.monotonic() - started < 1.5

        self.blocker.execute("ROLLBACK")
        self.assert_nothing_written()

    def test_retry_helper_does_not_reissue_cancelled_transfer(self):
        """Test that retry_on_contention gives up on a cancelled transfer"""
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()
        attempts = []

        def operation():
            attempts.append(1)
            return self.processor.transfer(self.account_a.id, self.account_b.id, "10", cancel_event=cancel)

        with pytest.raises(TransferCancelledError):
            retry_on_contention(operation, attempts=3, backoff_seconds=0)

        assert len(attempts) == 1
