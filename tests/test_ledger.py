"""
Test suite for ledger module

Tests deposits, withdrawals, transfers, fees, idempotent retries, failure
recording, pending approvals and concurrent transfers. Balances must always
reconcile to the cent.
"""

import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from bank_ledger.storage import InMemoryStorage
from bank_ledger.audit import AuditTrail, AuditEventType
from bank_ledger.locks import LockManager, LockKey
from bank_ledger.accounts import AccountManager
from bank_ledger.ledger import LedgerEngine
from bank_ledger.config import LedgerConfig
from bank_ledger.money import Money, Currency
from bank_ledger.transactions import (
    TransactionStatus, TransactionType, TransferMode, TransferPriority
)
from bank_ledger.errors import (
    AccountInactive, InsufficientBalance, InvalidState, NotFound, ValidationFailed
)


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


class LedgerTestCase:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.locks = LockManager(timeout_seconds=5.0)
        self.config = LedgerConfig()
        self.account_manager = AccountManager(self.storage, self.audit_trail, self.locks)
        self.ledger = LedgerEngine(
            self.storage, self.account_manager, self.audit_trail, self.locks, self.config
        )

        self.alice = self.account_manager.open_account("CUST-ALICE", "BR01").account_number
        self.alice_salary = self.account_manager.open_account("CUST-ALICE", "BR01").account_number
        self.bob = self.account_manager.open_account("CUST-BOB", "BR02").account_number

    def total_balance(self, *accounts):
        return sum((self.ledger.balance(a) for a in accounts), Money.zero())


class TestDepositWithdraw(LedgerTestCase):
    """Test single-account postings"""

    def test_deposit(self):
        transaction = self.ledger.deposit(self.alice, "1000.00")

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.balance_before == usd("0.00")
        assert transaction.balance_after == usd("1000.00")
        assert transaction.receipt_number.startswith("RCP")
        assert transaction.id.startswith("TXN")
        assert self.ledger.balance(self.alice) == usd("1000.00")

    def test_withdraw(self):
        self.ledger.deposit(self.alice, "1000.00")
        transaction = self.ledger.withdraw(self.alice, "250.50")

        assert transaction.balance_before == usd("1000.00")
        assert transaction.balance_after == usd("749.50")
        assert self.ledger.balance(self.alice) == usd("749.50")

    def test_withdraw_more_than_balance_fails_without_change(self):
        self.ledger.deposit(self.alice, "100.00")

        with pytest.raises(InsufficientBalance) as exc_info:
            self.ledger.withdraw(self.alice, "100.01")

        failed = exc_info.value.transaction
        assert failed.status == TransactionStatus.FAILED
        assert failed.error_code == "INSUFFICIENT_BALANCE"
        assert self.ledger.get_transaction(failed.id).status == TransactionStatus.FAILED
        assert self.ledger.balance(self.alice) == usd("100.00")

    def test_failure_is_audited(self):
        with pytest.raises(InsufficientBalance):
            self.ledger.withdraw(self.alice, "1.00")
        assert len(self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_FAILED)) == 1

    def test_invalid_amounts_rejected_before_any_record(self):
        with pytest.raises(ValidationFailed):
            self.ledger.deposit(self.alice, 10.0)
        with pytest.raises(ValidationFailed):
            self.ledger.deposit(self.alice, "-5")
        with pytest.raises(ValidationFailed):
            self.ledger.deposit(self.alice, "1e27")
        assert self.ledger.get_account_transactions(self.alice) == []

    def test_unknown_account(self):
        with pytest.raises(NotFound):
            self.ledger.deposit("NOPE", "1.00")

    def test_frozen_account_rejected(self):
        self.ledger.deposit(self.alice, "100.00")
        self.account_manager.freeze_account(self.alice, "Investigation")

        with pytest.raises(AccountInactive):
            self.ledger.withdraw(self.alice, "10.00")
        assert self.ledger.balance(self.alice) == usd("100.00")


class TestTransfer(LedgerTestCase):
    """Test transfers, fees and tax"""

    def setup_method(self):
        super().setup_method()
        self.ledger.deposit(self.alice, "1000.00")

    def test_neft_transfer_charges_fee_and_tax(self):
        transaction = self.ledger.transfer(self.alice, self.bob, "300.00", TransferMode.NEFT)

        assert transaction.fee == usd("2.00")
        assert transaction.tax == usd("0.36")
        assert transaction.total_amount == usd("302.36")
        assert self.ledger.balance(self.alice) == usd("697.64")
        assert self.ledger.balance(self.bob) == usd("300.00")
        assert transaction.counterparty_balance_before == usd("0.00")
        assert transaction.counterparty_balance_after == usd("300.00")

    def test_high_priority_fee(self):
        transaction = self.ledger.transfer(
            self.alice, self.bob, "100.00", TransferMode.UPI, priority=TransferPriority.HIGH
        )
        assert transaction.fee == usd("7.00")
        assert transaction.tax == usd("1.26")

    def test_own_account_transfer_is_free(self):
        transaction = self.ledger.transfer(self.alice, self.alice_salary, "100.00", TransferMode.IMPS)
        assert transaction.fee == usd("0.00")
        assert self.ledger.balance(self.alice) == usd("900.00")

    def test_same_account_rejected(self):
        with pytest.raises(ValidationFailed, match="must differ"):
            self.ledger.transfer(self.alice, self.alice, "1.00")

    def test_currency_mismatch_rejected(self):
        euro = self.account_manager.open_account("CUST-BOB", "BR02", currency=Currency.EUR)
        with pytest.raises(ValidationFailed, match="Cannot transfer"):
            self.ledger.transfer(self.alice, euro.account_number, "1.00")

    def test_insufficient_balance_includes_fee(self):
        with pytest.raises(InsufficientBalance) as exc_info:
            self.ledger.transfer(self.alice, self.bob, "999.00", TransferMode.NEFT)

        assert exc_info.value.transaction.status == TransactionStatus.FAILED
        assert self.ledger.balance(self.alice) == usd("1000.00")
        assert self.ledger.balance(self.bob) == usd("0.00")

    def test_frozen_destination_leaves_both_balances(self):
        self.account_manager.freeze_account(self.bob, "Investigation")
        with pytest.raises(AccountInactive):
            self.ledger.transfer(self.alice, self.bob, "100.00", TransferMode.UPI)
        assert self.ledger.balance(self.alice) == usd("1000.00")
        assert self.ledger.balance(self.bob) == usd("0.00")

    def test_transfer_conserves_money_without_fees(self):
        before = self.total_balance(self.alice, self.bob, self.alice_salary)
        for amount in ("10.00", "20.01", "300.99"):
            self.ledger.transfer(self.alice, self.bob, amount, TransferMode.UPI)
        self.ledger.transfer(self.bob, self.alice_salary, "50.00", TransferMode.INTERNAL)
        assert self.total_balance(self.alice, self.bob, self.alice_salary) == before

    def test_fees_account_for_the_difference(self):
        transaction = self.ledger.transfer(self.alice, self.bob, "100.00", TransferMode.RTGS)
        total = self.total_balance(self.alice, self.bob)
        assert total + transaction.fee + transaction.tax == usd("1000.00")

    def test_high_value_transfer_flagged(self):
        self.ledger.deposit(self.alice, "20000.00")
        transaction = self.ledger.transfer(self.alice, self.bob, "15000.00", TransferMode.RTGS)
        assert transaction.requires_approval


class TestIdempotency(LedgerTestCase):
    """Test reference number retries"""

    def setup_method(self):
        super().setup_method()
        self.ledger.deposit(self.alice, "1000.00")

    def test_replay_returns_same_transaction(self):
        first = self.ledger.transfer(self.alice, self.bob, "100.00", TransferMode.UPI,
                                     reference="PAY-001")
        second = self.ledger.transfer(self.alice, self.bob, "100.00", TransferMode.UPI,
                                      reference="PAY-001")

        assert first.id == second.id
        assert self.ledger.balance(self.alice) == usd("900.00")
        assert self.ledger.balance(self.bob) == usd("100.00")

    def test_replay_of_failed_attempt_returns_failure(self):
        with pytest.raises(InsufficientBalance) as exc_info:
            self.ledger.withdraw(self.alice, "5000.00", reference="W-1")
        replay = self.ledger.withdraw(self.alice, "5000.00", reference="W-1")
        assert replay.id == exc_info.value.transaction.id
        assert replay.status == TransactionStatus.FAILED

    def test_reference_reuse_with_different_request_rejected(self):
        self.ledger.transfer(self.alice, self.bob, "100.00", TransferMode.UPI, reference="PAY-002")
        with pytest.raises(ValidationFailed, match="different request"):
            self.ledger.transfer(self.alice, self.bob, "200.00", TransferMode.UPI,
                                 reference="PAY-002")

    def test_concurrent_replays_apply_once(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: self.ledger.transfer(self.alice, self.bob, "10.00", TransferMode.UPI,
                                               reference="PAY-RACE"),
                range(16)
            ))

        assert len({t.id for t in results}) == 1
        assert self.ledger.balance(self.bob) == usd("10.00")


class TestPendingTransfers(LedgerTestCase):
    """Test submit, approve and cancel"""

    def setup_method(self):
        super().setup_method()
        self.ledger.deposit(self.alice, "50000.00")

    def test_submit_and_approve(self):
        pending = self.ledger.submit_transfer(self.alice, self.bob, "20000.00", TransferMode.RTGS)
        assert pending.status == TransactionStatus.PENDING
        assert pending.requires_approval
        assert self.ledger.balance(self.bob) == usd("0.00")

        approved = self.ledger.approve_pending_transfer(pending.id)
        assert approved.status == TransactionStatus.COMPLETED
        assert self.ledger.balance(self.bob) == usd("20000.00")

        with pytest.raises(InvalidState, match="not pending"):
            self.ledger.approve_pending_transfer(pending.id)

    def test_cancel_pending(self):
        pending = self.ledger.submit_transfer(self.alice, self.bob, "20000.00")
        cancelled = self.ledger.cancel_transaction(pending.id, "Customer withdrew request")

        assert cancelled.status == TransactionStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert self.ledger.balance(self.alice) == usd("50000.00")

    def test_terminal_transaction_cannot_be_cancelled(self):
        completed = self.ledger.transfer(self.alice, self.bob, "10.00")
        with pytest.raises(InvalidState, match="only pending or processing"):
            self.ledger.cancel_transaction(completed.id, "Too late")

    def test_unknown_transaction(self):
        with pytest.raises(NotFound):
            self.ledger.get_transaction("TXN-NOPE")


class TestPostingPrimitives(LedgerTestCase):

    def test_post_requires_account_lock(self):
        with pytest.raises(RuntimeError, match="requires its account lock"):
            self.ledger.post_credit(self.alice, usd("10.00"))

    def test_post_joins_callers_unit_of_work(self):
        with pytest.raises(RuntimeError):
            with self.locks.acquire(LockKey.account(self.alice)):
                with self.storage.atomic():
                    self.ledger.post_credit(self.alice, usd("10.00"),
                                            related_entity_type="loan", related_entity_id="LN1")
                    raise RuntimeError("caller failed after posting")

        assert self.ledger.balance(self.alice) == usd("0.00")
        assert self.ledger.transactions.for_entity("loan", "LN1") == []

    def test_post_debit_books_fee(self):
        self.ledger.deposit(self.alice, "100.00")
        with self.locks.acquire(LockKey.account(self.alice)):
            transaction = self.ledger.post_debit(self.alice, usd("50.00"), fee=usd("5.00"))
        assert transaction.total_amount == usd("55.00")
        assert self.ledger.balance(self.alice) == usd("45.00")


class TestQueries(LedgerTestCase):

    def test_account_transactions_filtered_by_status(self):
        self.ledger.deposit(self.alice, "100.00")
        with pytest.raises(InsufficientBalance):
            self.ledger.withdraw(self.alice, "500.00")

        assert len(self.ledger.get_account_transactions(self.alice)) == 2
        completed = self.ledger.get_account_transactions(
            self.alice, status=TransactionStatus.COMPLETED
        )
        assert [t.transaction_type for t in completed] == [TransactionType.DEPOSIT]

    def test_find_by_reference(self):
        transaction = self.ledger.deposit(self.alice, "1.00", reference="DEP-1")
        assert self.ledger.find_by_reference("DEP-1").id == transaction.id
        assert self.ledger.find_by_reference("DEP-2") is None


class TestConcurrency(LedgerTestCase):
    """Test that concurrent transfers neither deadlock nor lose money"""

    def setup_method(self):
        super().setup_method()
        self.ledger.deposit(self.alice, "10000.00")
        self.ledger.deposit(self.bob, "10000.00")

    def test_opposite_direction_transfers_do_not_deadlock(self):
        errors = []

        def move(source, destination):
            try:
                for _ in range(25):
                    self.ledger.transfer(source, destination, "10.00", TransferMode.UPI)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=move, args=(self.alice, self.bob)),
            threading.Thread(target=move, args=(self.bob, self.alice)),
            threading.Thread(target=move, args=(self.alice, self.bob)),
            threading.Thread(target=move, args=(self.bob, self.alice)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert not any(thread.is_alive() for thread in threads)
        assert errors == []
        assert self.ledger.balance(self.alice) == usd("10000.00")
        assert self.ledger.balance(self.bob) == usd("10000.00")

    def test_concurrent_withdrawals_never_overdraw(self):
        def withdraw(_):
            try:
                self.ledger.withdraw(self.alice, "1000.00")
                return True
            except InsufficientBalance:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(withdraw, range(15)))

        assert results.count(True) == 10
        assert self.ledger.balance(self.alice) == usd("0.00")

    def test_audit_chain_valid_after_concurrent_load(self):
        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(
                lambda i: self.ledger.transfer(
                    self.alice if i % 2 else self.bob,
                    self.bob if i % 2 else self.alice,
                    "1.00", TransferMode.UPI
                ),
                range(30)
            ))
        assert self.audit_trail.verify_integrity()["valid"]

    def test_lock_registry_stays_bounded(self):
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(
                lambda i: self.ledger.deposit(self.alice, "1.00", reference=f"DEP-{i}"),
                range(500)
            ))
        assert self.ledger.balance(self.alice) == usd("10500.00")
        assert self.locks.lock_count() == 0
