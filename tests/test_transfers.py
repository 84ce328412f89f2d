"""
Test suite for the transfer orchestrator

Covers validation order, atomicity, self-transfers, external methods,
admin-booked transactions and concurrent transfers.
"""

import pytest
import sqlite3
import threading
from decimal import Decimal
from datetime import datetime, timezone

from nivalus_bank.storage import InMemoryStorage, SQLiteStorage
from nivalus_bank.accounts import AccountRole, AccountStore
from nivalus_bank.auth import Caller
from nivalus_bank.transactions import TransactionLog, TransactionType
from nivalus_bank.transfers import TransferOrchestrator
from nivalus_bank.errors import (
    AccountInactiveError, AccountNotFoundError, BusyError, ForbiddenError,
    InsufficientFundsError, InvalidAmountError, InvalidFieldError, InvalidPinError,
    RecipientInactiveError, RecipientNotFoundError
)


class TransferTestBase:

    def make_storage(self):
        return InMemoryStorage(lock_timeout=2.0)

    def setup_method(self):
        self.storage = self.make_storage()
        self.accounts = AccountStore(self.storage)
        self.log = TransactionLog(self.storage, self.accounts)
        self.orchestrator = TransferOrchestrator(self.storage, self.accounts, self.log)

        self.alice = self.accounts.create_account(
            "alice", "alice@example.com", "password123", "1234", balance="100.00")
        self.bob = self.accounts.create_account(
            "bob", "bob@example.com", "password123", "5678", balance="20.00")
        self.admin = self.accounts.create_account(
            "admin", "admin@example.com", "password123", "0000", role=AccountRole.ADMIN)

        self.alice_caller = Caller.from_account(self.alice)
        self.admin_caller = Caller.from_account(self.admin)

    def balance(self, account):
        return self.accounts.get_account(account.id).balance


class TestDirectTransfers(TransferTestBase):
    """Transfers between two local accounts"""

    def test_transfer_by_username(self):
        result = self.orchestrator.execute_transfer(
            self.alice_caller, "1234", "30.00", recipient="bob", memo="Dinner")

        assert self.balance(self.alice) == Decimal("70.00")
        assert self.balance(self.bob) == Decimal("50.00")

        transaction = result.transaction
        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.account_id == self.alice.id
        assert transaction.created_by == self.alice.id
        assert transaction.amount == Decimal("30.00")
        assert transaction.recipient_info == {
            "email": "bob@example.com",
            "username": "bob",
            "memo": "Dinner",
            "method": "direct",
        }

        summary = result.to_public_dict()
        assert summary["recipient"] == "bob"
        assert summary["recipientEmail"] == "bob@example.com"
        assert summary["transferMethod"] == "direct"
        assert summary["amount"] == "30.00"

    def test_transfer_by_email_ignores_case(self):
        self.orchestrator.execute_transfer(
            self.alice_caller, "1234", "10", recipient="BOB@example.com", recipient_type="email")
        assert self.balance(self.bob) == Decimal("30.00")

    def test_entire_balance_can_be_sent(self):
        self.orchestrator.execute_transfer(self.alice_caller, "1234", "100.00", recipient="bob")
        assert self.balance(self.alice) == Decimal("0.00")

    def test_self_transfer_nets_to_zero(self):
        self.orchestrator.execute_transfer(self.alice_caller, "1234", "40.00", recipient="alice")

        assert self.balance(self.alice) == Decimal("100.00")
        history = self.log.list_for_account(self.alice.id)
        assert len(history) == 1
        assert history[0].amount == Decimal("40.00")

    def test_history_only_records_sender_side(self):
        self.orchestrator.execute_transfer(self.alice_caller, "1234", "5", recipient="bob")
        assert len(self.log.list_for_account(self.alice.id)) == 1
        assert self.log.list_for_account(self.bob.id) == []


class TestTransferValidation(TransferTestBase):
    """Rejected transfers never change a balance"""

    def assert_untouched(self):
        assert self.balance(self.alice) == Decimal("100.00")
        assert self.balance(self.bob) == Decimal("20.00")
        assert self.log.list_all() == []

    def test_invalid_pin(self):
        with pytest.raises(InvalidPinError):
            self.orchestrator.execute_transfer(self.alice_caller, "9999", "10", recipient="bob")
        self.assert_untouched()

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "100.01", recipient="bob")
        self.assert_untouched()

    def test_pin_checked_before_funds(self):
        with pytest.raises(InvalidPinError):
            self.orchestrator.execute_transfer(self.alice_caller, "9999", "5000", recipient="bob")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", amount, recipient="bob")
        self.assert_untouched()

    def test_unknown_recipient(self):
        with pytest.raises(RecipientNotFoundError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="nobody")
        self.assert_untouched()

    def test_missing_recipient_or_bad_recipient_type(self):
        with pytest.raises(InvalidFieldError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10")
        with pytest.raises(InvalidFieldError):
            self.orchestrator.execute_transfer(
                self.alice_caller, "1234", "10", recipient="bob", recipient_type="phone")
        self.assert_untouched()

    def test_inactive_recipient(self):
        self.accounts.update_status(self.bob.id, "inactive")
        with pytest.raises(RecipientInactiveError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="bob")
        self.assert_untouched()

    def test_inactive_sender(self):
        self.accounts.update_status(self.alice.id, "inactive")
        with pytest.raises(AccountInactiveError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="bob")
        self.assert_untouched()

    def test_unknown_sender(self):
        ghost = Caller(account_id=999, role=AccountRole.USER)
        with pytest.raises(AccountNotFoundError):
            self.orchestrator.execute_transfer(ghost, "1234", "10", recipient="bob")

    def test_unknown_method(self):
        with pytest.raises(InvalidFieldError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", method="crypto")
        self.assert_untouched()

    def test_log_failure_rolls_back_balances(self, monkeypatch):
        def failing_append(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(self.log, "append", failing_append)
        with pytest.raises(RuntimeError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="bob")
        monkeypatch.undo()
        self.assert_untouched()


class TestExternalTransfers(TransferTestBase):
    """Transfers leaving the bank"""

    def test_wire_transfer_debits_sender_only(self):
        result = self.orchestrator.execute_transfer(
            self.alice_caller, "1234", "60", method="wire", memo="Tuition",
            details={"swiftCode": "BARCGB22", "bankName": "Barclays", "country": "GB"})

        assert self.balance(self.alice) == Decimal("40.00")
        assert self.balance(self.bob) == Decimal("20.00")

        info = result.transaction.recipient_info
        assert info["method"] == "wire"
        assert info["swift_code"] == "BARCGB22"
        assert info["account_number"] == "N/A"
        assert info["memo"] == "Tuition"

        summary = result.to_public_dict()
        assert summary["recipient"] == "External Recipient"
        assert summary["recipientInfo"]["bank_name"] == "Barclays"
        assert "recipientEmail" not in summary

    def test_card_transfer_masks_number(self):
        result = self.orchestrator.execute_transfer(
            self.alice_caller, "1234", "15", method="card",
            details={"cardNumber": "4000123412341234", "cardholderName": "A. Person"})

        info = result.transaction.recipient_info
        assert info["card_number"] == "xxxx-xxxx-xxxx-1234"
        assert "4000123412341234" not in str(info)

    def test_external_transfer_still_needs_funds(self):
        with pytest.raises(InsufficientFundsError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "500", method="p2p")
        assert self.balance(self.alice) == Decimal("100.00")


class TestAdminTransactions(TransferTestBase):
    """Admin-booked deposits, withdrawals and transfers"""

    def test_deposit(self):
        transaction = self.orchestrator.admin_create_transaction(
            self.admin_caller, self.bob.id, "deposit", "80.00")

        assert self.balance(self.bob) == Decimal("100.00")
        assert transaction.created_by == self.admin.id
        assert transaction.account_id == self.bob.id

    def test_withdrawal_with_backfilled_timestamp(self):
        when = datetime(2022, 6, 1, 12, 0, tzinfo=timezone.utc)
        transaction = self.orchestrator.admin_create_transaction(
            self.admin_caller, self.alice.id, TransactionType.WITHDRAWAL, "25",
            timestamp=when, recipient_info={"method": "other", "recipient": "ATM", "memo": ""})

        assert self.balance(self.alice) == Decimal("75.00")
        assert transaction.timestamp == when
        assert self.log.get_transaction(transaction.id).recipient_info["recipient"] == "ATM"

    def test_recipient_info_is_tagged_and_masked(self):
        transaction = self.orchestrator.admin_create_transaction(
            self.admin_caller, self.bob.id, "deposit", "5",
            recipient_info={"method": "card", "cardNumber": "4111 1111 1111 1111"})
        stored = self.log.get_transaction(transaction.id).recipient_info
        assert stored["card_number"] == "xxxx-xxxx-xxxx-1111"
        assert "4111111111111111" not in str(stored).replace(" ", "")

        transaction = self.orchestrator.admin_create_transaction(
            self.admin_caller, self.bob.id, "deposit", "5", recipient_info={"note": "legacy"})
        assert self.log.get_transaction(transaction.id).recipient_info["method"] == "other"

    def test_insufficient_funds_records_nothing(self):
        with pytest.raises(InsufficientFundsError):
            self.orchestrator.admin_create_transaction(
                self.admin_caller, self.bob.id, "transfer", "20.01")
        assert self.balance(self.bob) == Decimal("20.00")
        assert self.log.list_all() == []

    def test_requires_admin(self):
        with pytest.raises(ForbiddenError):
            self.orchestrator.admin_create_transaction(
                self.alice_caller, self.alice.id, "deposit", "1000")
        assert self.balance(self.alice) == Decimal("100.00")

    def test_unknown_account_and_type(self):
        with pytest.raises(AccountNotFoundError):
            self.orchestrator.admin_create_transaction(self.admin_caller, 999, "deposit", "1")
        with pytest.raises(InvalidFieldError):
            self.orchestrator.admin_create_transaction(self.admin_caller, self.bob.id, "bonus", "1")


class TestConcurrentTransfers(TransferTestBase):
    """No lost updates under concurrent transfers"""

    def _run_threads(self, worker, count):
        errors = []

        def run(index):
            try:
                worker(index)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def test_parallel_transfers_conserve_money(self):
        def worker(index):
            for _ in range(2):
                self.orchestrator.execute_transfer(self.alice_caller, "1234", "5.00", recipient="bob")

        errors = self._run_threads(worker, 8)

        assert errors == []
        assert self.balance(self.alice) == Decimal("20.00")
        assert self.balance(self.bob) == Decimal("100.00")
        assert len(self.log.list_for_account(self.alice.id)) == 16

    def test_only_one_overdrawing_transfer_succeeds(self):
        errors = self._run_threads(
            lambda index: self.orchestrator.execute_transfer(
                self.alice_caller, "1234", "60.00", recipient="bob"),
            2
        )

        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientFundsError)
        assert self.balance(self.alice) == Decimal("40.00")
        assert self.balance(self.bob) == Decimal("80.00")

    def test_opposite_direction_transfers_do_not_deadlock(self):
        bob_caller = Caller.from_account(self.bob)

        def worker(index):
            if index % 2:
                self.orchestrator.execute_transfer(self.alice_caller, "1234", "1", recipient="bob")
            else:
                self.orchestrator.execute_transfer(bob_caller, "5678", "1", recipient="alice")

        errors = self._run_threads(worker, 6)

        assert errors == []
        assert self.balance(self.alice) + self.balance(self.bob) == Decimal("120.00")


class TestBusyAccounts(TransferTestBase):
    """Bounded waiting on locked accounts"""

    def make_storage(self):
        return InMemoryStorage(lock_timeout=0.05)

    def test_locked_sender_reports_busy(self):
        self.orchestrator.max_retries = 2
        self.orchestrator.retry_backoff = 0
        locked = threading.Event()
        release = threading.Event()

        def hold():
            with self.storage.atomic():
                self.accounts.lock_accounts([self.alice.id])
                locked.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        assert locked.wait(5)
        try:
            with pytest.raises(BusyError):
                self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="bob")
        finally:
            release.set()
            holder.join()

        assert self.balance(self.alice) == Decimal("100.00")
        assert self.log.list_all() == []

        # Succeeds once the lock is gone
        self.orchestrator.execute_transfer(self.alice_caller, "1234", "10", recipient="bob")
        assert self.balance(self.alice) == Decimal("90.00")


class TestTransfersOnSQLite(TestDirectTransfers):
    """The direct-transfer suite against SQLite"""

    def make_storage(self):
        return SQLiteStorage(":memory:", lock_timeout=2.0)

    def teardown_method(self):
        self.storage.close()

    def test_failed_commit_leaves_balances_and_storage_usable(self, monkeypatch):
        real_commit = self.storage._commit
        failures = ["database is locked"]

        def flaky_commit():
            if failures:
                raise sqlite3.OperationalError(failures.pop())
            real_commit()

        monkeypatch.setattr(self.storage, "_commit", flaky_commit)

        with pytest.raises(sqlite3.OperationalError):
            self.orchestrator.execute_transfer(self.alice_caller, "1234", "5.00", recipient="bob")

        assert self.balance(self.alice) == Decimal("100.00")
        assert self.balance(self.bob) == Decimal("20.00")
        assert self.log.list_all() == []

        self.orchestrator.execute_transfer(self.alice_caller, "1234", "5.00", recipient="bob")
        assert self.balance(self.alice) == Decimal("95.00")
        assert self.balance(self.bob) == Decimal("25.00")

        updated = self.accounts.update_avatar(self.alice.id, "data:image/png;base64,AA")
        assert updated.avatar == "data:image/png;base64,AA"
