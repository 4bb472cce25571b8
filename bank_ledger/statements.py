"""
Statements Module

Read-only projections over accounts, loans and DPS: account statements
with running balances, loan and DPS statements, and a portfolio summary.
No locks are taken; results reflect committed state.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .money import Money
from .accounts import AccountManager
from .ledger import LedgerEngine
from .loans import (
    LoanManager, Loan, RepaymentScheduleEntry, LoanDisbursement, LoanApprovalHistory,
    ScheduleStatus
)
from .dps import DPSManager, DPS, DPSInstallment, InstallmentStatus
from .transactions import Transaction, TransactionStatus
from .errors import ValidationFailed


@dataclass
class StatementLine:
    transaction_id: str
    reference_number: str
    posted_at: Any
    description: str
    transaction_type: str
    debit: Money
    credit: Money
    balance: Money


@dataclass
class AccountStatement:
    account_number: str
    customer_id: str
    start_date: Optional[date]
    end_date: Optional[date]
    opening_balance: Money
    closing_balance: Money
    total_credits: Money
    total_debits: Money
    transaction_count: int
    lines: List[StatementLine] = field(default_factory=list)


@dataclass
class LoanStatement:
    loan: Loan
    total_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    installments_paid: int
    installments_pending: int
    installments_overdue: int
    next_due_date: Optional[date]
    next_due_amount: Optional[Money]
    outstanding_balance: Money
    schedule: List[RepaymentScheduleEntry]
    disbursements: List[LoanDisbursement]
    approval_history: List[LoanApprovalHistory]
    transactions: List[Transaction] = field(default_factory=list)


@dataclass
class DPSStatement:
    dps: DPS
    installments_paid: int
    installments_pending: int
    installments_overdue: int
    installments_missed: int
    total_deposited: Money
    total_penalty: Money
    next_due_date: Optional[date]
    maturity_date: date
    projected_maturity: Money
    installments: List[DPSInstallment]
    transactions: List[Transaction] = field(default_factory=list)


@dataclass
class PortfolioSummary:
    """Counts and totals by status; money totals are keyed by currency code"""
    loans_by_status: Dict[str, int]
    loan_outstanding_by_status: Dict[str, Dict[str, Decimal]]
    dps_by_status: Dict[str, int]
    dps_deposits_by_status: Dict[str, Dict[str, Decimal]]
    account_count: int
    account_deposits: Dict[str, Decimal]


def _add(totals: Dict[str, Decimal], money: Money) -> None:
    code = money.currency.code
    totals[code] = totals.get(code, Decimal('0.00')) + money.amount


class StatementBuilder:
    """Builds statements from committed ledger, loan and DPS state"""

    def __init__(self, account_manager: AccountManager, ledger: LedgerEngine,
                 loan_manager: LoanManager, dps_manager: DPSManager):
        self.account_manager = account_manager
        self.ledger = ledger
        self.loan_manager = loan_manager
        self.dps_manager = dps_manager

    def account_statement(self, account_number: str, start_date: Optional[date] = None,
                          end_date: Optional[date] = None) -> AccountStatement:
        """
        Statement of COMPLETED transactions within an inclusive date range

        The opening balance is taken from the balance snapshots: the balance
        after the last transaction before the range, else the balance before
        the first transaction in the range, else the current balance.
        """
        account = self.account_manager.require_account(account_number)
        if start_date and end_date and start_date > end_date:
            raise ValidationFailed("start_date must not be after end_date")

        completed = self.ledger.get_account_transactions(
            account_number, status=TransactionStatus.COMPLETED
        )
        before, in_range = [], []
        for transaction in completed:
            day = (transaction.completed_at or transaction.created_at).date()
            if start_date and day < start_date:
                before.append(transaction)
            elif end_date and day > end_date:
                continue
            else:
                in_range.append(transaction)

        if before:
            opening = self._snapshot(before[-1], account_number, after=True)
        elif in_range:
            opening = self._snapshot(in_range[0], account_number, after=False)
        else:
            opening = account.balance

        zero = Money.zero(account.currency)
        running = opening
        total_credits = zero
        total_debits = zero
        lines = []

        for transaction in in_range:
            debit = transaction.total_amount if transaction.debits(account_number) else zero
            credit = transaction.amount if transaction.credits(account_number) else zero
            running = running + credit - debit
            total_credits = total_credits + credit
            total_debits = total_debits + debit
            lines.append(StatementLine(
                transaction_id=transaction.id,
                reference_number=transaction.reference_number,
                posted_at=transaction.completed_at or transaction.created_at,
                description=transaction.description,
                transaction_type=transaction.transaction_type.value,
                debit=debit,
                credit=credit,
                balance=running
            ))

        return AccountStatement(
            account_number=account_number,
            customer_id=account.customer_id,
            start_date=start_date,
            end_date=end_date,
            opening_balance=opening,
            closing_balance=running,
            total_credits=total_credits,
            total_debits=total_debits,
            transaction_count=len(lines),
            lines=lines
        )

    def _snapshot(self, transaction: Transaction, account_number: str, after: bool) -> Money:
        if transaction.debits(account_number) or not transaction.from_account_number:
            return transaction.balance_after if after else transaction.balance_before
        return transaction.counterparty_balance_after if after \
            else transaction.counterparty_balance_before

    def loan_statement(self, loan_id: str) -> LoanStatement:
        loan = self.loan_manager.require_loan(loan_id)
        schedule = self.loan_manager.get_schedule(loan_id)
        zero = Money.zero(loan.currency)

        principal_paid = sum((e.principal_paid for e in schedule), zero)
        interest_paid = sum((e.interest_paid for e in schedule), zero)
        penalty_paid = sum((e.penalty_paid for e in schedule), zero)
        open_entries = [e for e in schedule if e.is_open]
        next_entry = open_entries[0] if open_entries else None

        return LoanStatement(
            loan=loan,
            total_paid=loan.total_paid,
            principal_paid=principal_paid,
            interest_paid=interest_paid,
            penalty_paid=penalty_paid,
            installments_paid=sum(1 for e in schedule if e.status == ScheduleStatus.PAID),
            installments_pending=sum(1 for e in schedule if e.status == ScheduleStatus.PENDING),
            installments_overdue=sum(1 for e in schedule if e.status == ScheduleStatus.OVERDUE),
            next_due_date=next_entry.due_date if next_entry else None,
            next_due_amount=next_entry.amount_due if next_entry else None,
            outstanding_balance=loan.outstanding_balance,
            schedule=schedule,
            disbursements=self.loan_manager.get_disbursements(loan_id),
            approval_history=self.loan_manager.get_approval_history(loan_id),
            transactions=self.ledger.transactions.for_entity("loan", loan_id)
        )

    def dps_statement(self, dps_number: str) -> DPSStatement:
        dps = self.dps_manager.require_dps(dps_number)
        installments = self.dps_manager.get_installments(dps_number)
        open_items = [i for i in installments if i.is_open]

        return DPSStatement(
            dps=dps,
            installments_paid=sum(1 for i in installments if i.status == InstallmentStatus.PAID),
            installments_pending=dps.installments_pending,
            installments_overdue=sum(
                1 for i in installments if i.status == InstallmentStatus.OVERDUE
            ),
            installments_missed=dps.installments_missed,
            total_deposited=dps.total_deposited,
            total_penalty=dps.total_penalty,
            next_due_date=open_items[0].due_date if open_items else None,
            maturity_date=dps.maturity_date,
            projected_maturity=dps.maturity_amount,
            installments=installments,
            transactions=self.ledger.transactions.for_entity("dps", dps_number)
        )

    def portfolio_summary(self) -> PortfolioSummary:
        loans_by_status: Dict[str, int] = {}
        loan_outstanding: Dict[str, Dict[str, Decimal]] = {}
        for loan in self.loan_manager.list_loans():
            status = loan.loan_status.value
            loans_by_status[status] = loans_by_status.get(status, 0) + 1
            _add(loan_outstanding.setdefault(status, {}), loan.outstanding_balance)

        dps_by_status: Dict[str, int] = {}
        dps_deposits: Dict[str, Dict[str, Decimal]] = {}
        for dps in self.dps_manager.list_dps():
            status = dps.status.value
            dps_by_status[status] = dps_by_status.get(status, 0) + 1
            _add(dps_deposits.setdefault(status, {}), dps.total_deposited)

        accounts = self.account_manager.list_accounts()
        account_deposits: Dict[str, Decimal] = {}
        for account in accounts:
            _add(account_deposits, account.balance)

        return PortfolioSummary(
            loans_by_status=loans_by_status,
            loan_outstanding_by_status=loan_outstanding,
            dps_by_status=dps_by_status,
            dps_deposits_by_status=dps_deposits,
            account_count=len(accounts),
            account_deposits=account_deposits
        )
