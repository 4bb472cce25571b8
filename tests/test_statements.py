"""
Test suite for statements module
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from bank_ledger.storage import InMemoryStorage
from bank_ledger.audit import AuditTrail
from bank_ledger.locks import LockManager
from bank_ledger.accounts import AccountManager
from bank_ledger.ledger import LedgerEngine
from bank_ledger.loans import LoanManager, LoanType
from bank_ledger.dps import DPSManager
from bank_ledger.statements import StatementBuilder
from bank_ledger.money import Money, Currency
from bank_ledger.transactions import TransferMode
from bank_ledger.errors import InsufficientBalance, NotFound, ValidationFailed


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


class TestStatements:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.locks = LockManager()
        self.account_manager = AccountManager(self.storage, self.audit_trail, self.locks)
        self.ledger = LedgerEngine(self.storage, self.account_manager, self.audit_trail, self.locks)
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.ledger, self.audit_trail
        )
        self.dps_manager = DPSManager(
            self.storage, self.account_manager, self.ledger, self.audit_trail
        )
        self.statements = StatementBuilder(
            self.account_manager, self.ledger, self.loan_manager, self.dps_manager
        )

        self.account = self.account_manager.open_account("CUST001", "BR01").account_number
        self.other = self.account_manager.open_account("CUST002", "BR01").account_number

    def _activity(self):
        self.ledger.deposit(self.account, "1000.00")
        self.ledger.withdraw(self.account, "200.00")
        self.ledger.transfer(self.account, self.other, "300.00", mode=TransferMode.UPI)

    def test_account_statement(self):
        self._activity()
        statement = self.statements.account_statement(self.account)

        assert statement.customer_id == "CUST001"
        assert statement.opening_balance == usd("0.00")
        assert statement.total_credits == usd("1000.00")
        assert statement.total_debits == usd("500.00")
        assert statement.closing_balance == usd("500.00")
        assert statement.closing_balance == self.ledger.balance(self.account)
        assert statement.transaction_count == 3
        assert [line.balance for line in statement.lines] == [
            usd("1000.00"), usd("800.00"), usd("500.00")
        ]

    def test_counterparty_view(self):
        self._activity()
        statement = self.statements.account_statement(self.other)

        assert statement.total_credits == usd("300.00")
        assert statement.total_debits == usd("0.00")
        assert statement.closing_balance == usd("300.00")

    def test_failed_transactions_excluded(self):
        self.ledger.deposit(self.account, "100.00")
        with pytest.raises(InsufficientBalance):
            self.ledger.withdraw(self.account, "500.00")

        statement = self.statements.account_statement(self.account)
        assert statement.transaction_count == 1
        assert statement.closing_balance == usd("100.00")

    def test_range_after_activity_carries_balance(self):
        self._activity()
        later = date.today() + timedelta(days=2)
        statement = self.statements.account_statement(self.account, start_date=later)

        assert statement.transaction_count == 0
        assert statement.opening_balance == usd("500.00")
        assert statement.closing_balance == usd("500.00")

    def test_invalid_range(self):
        with pytest.raises(ValidationFailed):
            self.statements.account_statement(
                self.account, start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)
            )

    def test_unknown_account(self):
        with pytest.raises(NotFound):
            self.statements.account_statement("NOPE")

    def test_loan_statement(self):
        loan = self.loan_manager.apply_for_loan(
            "CUST001", LoanType.PERSONAL_LOAN, "12000.00", "12", 12, self.account
        )
        self.loan_manager.approve_loan(loan.id, approval_date=date(2024, 1, 10))
        self.loan_manager.disburse_loan(loan.id, disbursement_date=date(2024, 1, 15))
        self.loan_manager.repay_loan(loan.id, "1066.19", payment_date=date(2024, 2, 15))

        statement = self.statements.loan_statement(loan.id)

        assert statement.installments_paid == 1
        assert statement.installments_pending == 11
        assert statement.interest_paid == usd("120.00")
        assert statement.principal_paid == usd("946.19")
        assert statement.outstanding_balance == usd("11053.81")
        assert statement.next_due_date == date(2024, 3, 15)
        assert len(statement.disbursements) == 1
        assert len(statement.approval_history) == 2
        assert [t.description for t in statement.transactions] == [
            f"Loan disbursement {loan.id}", f"Loan repayment {loan.id}"
        ]

    def test_dps_statement(self):
        self.ledger.deposit(self.account, "1000.00")
        dps, _ = self.dps_manager.create_dps(
            "CUST001", "500.00", 12, "6", linked_account=self.account,
            start_date=date(2024, 1, 1)
        )
        self.dps_manager.pay_installment(dps.dps_number, "500.00", payment_date=date(2024, 2, 1))

        statement = self.statements.dps_statement(dps.dps_number)

        assert statement.installments_paid == 1
        assert statement.installments_pending == 11
        assert statement.total_deposited == usd("500.00")
        assert statement.next_due_date == date(2024, 3, 1)
        assert statement.projected_maturity == dps.maturity_amount
        assert [t.amount for t in statement.transactions] == [usd("500.00")]

    def test_portfolio_summary(self):
        self._activity()
        loan = self.loan_manager.apply_for_loan(
            "CUST001", LoanType.CAR_LOAN, "5000.00", "10", 12, self.account,
            collateral_value="8000.00"
        )
        self.loan_manager.approve_loan(loan.id)
        self.dps_manager.create_dps("CUST002", "200", 6, "5")

        summary = self.statements.portfolio_summary()

        assert summary.loans_by_status == {"approved": 1}
        assert summary.loan_outstanding_by_status["approved"]["USD"] == Decimal('5000.00')
        assert summary.dps_by_status == {"active": 1}
        assert summary.account_count == 2
        assert summary.account_deposits["USD"] == Decimal('800.00')
