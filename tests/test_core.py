"""
Test suite for the banking core

End-to-end scenarios through BankingCore: customer onboarding, a full loan
lifecycle, a DPS lifecycle, the daily sweep and audit verification, on
both storage backends.
"""

from decimal import Decimal
from datetime import date

from bank_ledger.core import BankingCore
from bank_ledger.config import LedgerConfig
from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.money import Money, Currency
from bank_ledger.context import CallerContext
from bank_ledger.loans import LoanType, LoanStatus
from bank_ledger.dps import DPSStatus, InstallmentStatus
from bank_ledger.transactions import TransferMode


def usd(value: str) -> Money:
    return Money(Decimal(value), Currency.USD)


class TestBankingCore:
    """Integration tests for the wired system"""

    def setup_method(self):
        self.core = BankingCore(LedgerConfig(database_url="memory://", log_level="WARNING"))
        self.teller = CallerContext(actor_id="teller-1", role="teller", branch_id="BR01")

    def teardown_method(self):
        self.core.close()

    def test_wiring(self):
        assert isinstance(self.core.storage, InMemoryStorage)
        assert self.core.ledger.locks is self.core.locks
        assert self.core.loan_manager.config is self.core.config
        assert self.core.dps_manager.ledger is self.core.ledger

    def test_customer_banking_flow(self):
        """Open accounts, move money and reconcile"""
        alice = self.core.open_account("CUST-ALICE", "BR01", context=self.teller).account_number
        bob = self.core.open_account("CUST-BOB", "BR01", context=self.teller).account_number

        self.core.deposit(alice, "5000.00", context=self.teller)
        self.core.withdraw(alice, "500.00", context=self.teller)
        transfer = self.core.transfer(alice, bob, "1000.00", mode=TransferMode.NEFT,
                                      context=self.teller)

        assert transfer.fee == usd("2.00")
        assert transfer.tax == usd("0.36")
        assert self.core.balance(alice) == usd("3497.64")
        assert self.core.balance(bob) == usd("1000.00")

        statement = self.core.statements.account_statement(alice)
        assert statement.closing_balance == self.core.balance(alice)

    def test_loan_lifecycle(self):
        account = self.core.open_account("CUST001", "BR01").account_number
        loan = self.core.apply_for_loan(
            "CUST001", LoanType.HOME_LOAN, "3000.00", "0", 3, account, collateral_value="5000.00"
        )
        loan, schedule = self.core.approve_loan(loan.id, approval_date=date(2024, 1, 1))
        assert len(schedule) == 3

        loan, _ = self.core.disburse_loan(loan.id, disbursement_date=date(2024, 1, 1))
        assert self.core.balance(account) == usd("3000.00")

        for entry in schedule:
            self.core.repay_loan(loan.id, "1000.00", payment_date=entry.due_date)

        loan = self.core.loan_manager.get_loan(loan.id)
        assert loan.loan_status == LoanStatus.CLOSED
        assert loan.total_paid == usd("3000.00")
        assert self.core.balance(account) == usd("0.00")

    def test_eligibility_and_search(self):
        account = self.core.open_account("CUST001", "BR01").account_number
        result = self.core.check_eligibility(
            "CUST001", LoanType.HOME_LOAN, "50000.00", "8", 120, account,
            monthly_income="5000.00", collateral_value="100000.00"
        )
        assert result.eligible
        assert result.ltv_ratio == Decimal('50.00')

        loan = self.core.apply_for_loan(
            "CUST001", LoanType.HOME_LOAN, "50000.00", "8", 120, account,
            monthly_income="5000.00", collateral_value="100000.00"
        )
        found = self.core.search_loans(customer_id="CUST001", loan_type=LoanType.HOME_LOAN)
        assert [item.id for item in found.loans] == [loan.id]

    def test_dps_lifecycle(self):
        account = self.core.open_account("CUST001", "BR01").account_number
        self.core.deposit(account, "600.00")

        projection = self.core.calculate_maturity("100.00", 6, "12")
        dps, installments = self.core.create_dps(
            "CUST001", "100.00", 6, "12", linked_account=account, start_date=date(2024, 1, 1)
        )
        assert dps.maturity_amount == projection.maturity_amount

        for item in installments:
            self.core.pay_installment(dps.dps_number, "100.00", payment_date=item.due_date)
        dps, _ = self.core.mature_dps(dps.dps_number, as_of=date(2024, 7, 1))

        assert dps.status == DPSStatus.MATURED
        assert self.core.balance(account) == usd("615.20")

    def test_close_dps_through_core(self):
        account = self.core.open_account("CUST001", "BR01").account_number
        dps, _ = self.core.create_dps("CUST001", "100.00", 6, "12", linked_account=account)
        dps, transaction = self.core.close_dps(dps.dps_number)
        assert dps.status == DPSStatus.CLOSED
        assert transaction is None

    def test_daily_sweep(self):
        savings = self.core.open_account("CUST001", "BR01").account_number
        borrower = self.core.open_account("CUST002", "BR01").account_number
        self.core.deposit(savings, "1500.00")

        dps, _ = self.core.create_dps(
            "CUST001", "1000.00", 12, "6", linked_account=savings,
            start_date=date(2024, 1, 1), auto_debit=True
        )
        loan = self.core.apply_for_loan(
            "CUST002", LoanType.PERSONAL_LOAN, "12000.00", "12", 12, borrower
        )
        self.core.approve_loan(loan.id, approval_date=date(2024, 1, 10))
        self.core.disburse_loan(loan.id, disbursement_date=date(2024, 1, 15))

        results = self.core.run_daily_sweep(as_of=date(2024, 3, 1))

        assert results["as_of"] == "2024-03-01"
        assert results["dps_auto_debit"]["installments_collected"] == 1
        assert results["dps_auto_debit"]["insufficient_balance"] == 1
        assert results["dps_missed_installments"]["installments_missed"] == 0
        assert results["loan_defaults"]["entries_marked_overdue"] == 1
        assert results["loan_defaults"]["loans_defaulted"] == 0
        assert self.core.balance(savings) == usd("495.00")

        results = self.core.run_daily_sweep(as_of=date(2024, 6, 15))

        assert results["dps_missed_installments"]["dps_defaulted"] == 1
        assert results["loan_defaults"]["loans_defaulted"] == 1
        assert self.core.dps_manager.get_dps(dps.dps_number).status == DPSStatus.DEFAULTED
        assert self.core.loan_manager.get_loan(loan.id).loan_status == LoanStatus.DEFAULTED

        installments = self.core.dps_manager.get_installments(dps.dps_number)
        assert installments[0].status == InstallmentStatus.PAID

    def test_audit_trail_verifies_after_activity(self):
        account = self.core.open_account("CUST001", "BR01").account_number
        self.core.deposit(account, "100.00")
        self.core.withdraw(account, "40.00")

        result = self.core.verify_audit_trail()
        assert result["valid"]
        assert result["total_events"] >= 3

    def test_audit_can_be_disabled(self):
        core = BankingCore(LedgerConfig(enable_audit_logging=False, log_level="WARNING"))
        account = core.open_account("CUST001", "BR01").account_number
        core.deposit(account, "100.00")
        assert core.audit_trail.count_events() == 0
        core.close()


class TestSQLiteBackedCore:

    def test_state_survives_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        config = LedgerConfig(database_url=url, log_level="WARNING")

        core = BankingCore(config)
        assert isinstance(core.storage, SQLiteStorage)
        account = core.open_account("CUST001", "BR01").account_number
        core.deposit(account, "250.00")
        loan = core.apply_for_loan("CUST001", LoanType.CAR_LOAN, "5000.00", "9", 12, account,
                                   collateral_value="10000.00")
        core.close()

        restarted = BankingCore(config)
        assert restarted.balance(account) == usd("250.00")
        assert restarted.loan_manager.get_loan(loan.id).loan_status == LoanStatus.APPLICATION
        assert restarted.verify_audit_trail()["valid"]
        restarted.close()
