"""
Loan Module

Loan lifecycle from application through approval, disbursement, repayment,
foreclosure and default:

    APPLICATION -> PROCESSING -> APPROVED -> ACTIVE -> CLOSED | DEFAULTED

with approval (PENDING/APPROVED/REJECTED) and disbursement
(PENDING/SCHEDULED/COMPLETED/FAILED) tracked alongside. The repayment
schedule is generated once at approval; afterwards only entry status,
penalties and payments change.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .money import Money, Currency, parse_amount, round_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import Account, AccountManager, AccountStatus, KYCStatus
from .ledger import LedgerEngine
from .locks import LockManager, LockKey
from .config import LedgerConfig
from .context import CallerContext, resolve_context
from .transactions import Transaction, TransactionStatus, TransactionType, TransferMode
from .amortization import (
    add_months, build_schedule, calculate_emi, late_penalty, prorated_interest
)
from .errors import (
    BankingError, DisbursementFailed, ExternalPostingFailed, InsufficientBalance,
    InvalidState, LoanAlreadyDisbursed, NotFound, ValidationFailed
)
from .logging_config import get_logger, log_action


class LoanType(Enum):
    HOME_LOAN = "home_loan"
    CAR_LOAN = "car_loan"
    PERSONAL_LOAN = "personal_loan"
    EDUCATION_LOAN = "education_loan"
    BUSINESS_LOAN = "business_loan"
    GOLD_LOAN = "gold_loan"
    INDUSTRIAL_LOAN = "industrial_loan"
    IMPORT_LC_LOAN = "import_lc_loan"
    WORKING_CAPITAL_LOAN = "working_capital_loan"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    APPLICATION = "application"
    PROCESSING = "processing"
    APPROVED = "approved"
    ACTIVE = "active"
    CLOSED = "closed"
    DEFAULTED = "defaulted"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisbursementStatus(Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


class ApprovalStage(Enum):
    APPLICATION_REVIEW = "application_review"
    DOCUMENT_VERIFICATION = "document_verification"
    CREDIT_CHECK = "credit_check"
    FINAL_APPROVAL = "final_approval"


class ApprovalDecision(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


OPEN_ENTRY_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.OVERDUE)

# Loan products that must be backed by collateral
SECURED_LOAN_TYPES = frozenset({
    LoanType.HOME_LOAN, LoanType.CAR_LOAN, LoanType.GOLD_LOAN, LoanType.INDUSTRIAL_LOAN
})

AmountInput = Union[Money, Decimal, int, str]


def _repayment_description(loan_id: str) -> str:
    return f"Loan repayment {loan_id}"


def _foreclosure_description(loan_id: str) -> str:
    return f"Loan foreclosure {loan_id}"


def _percent(part: Money, whole: Money) -> Decimal:
    return round_money(part.amount * Decimal('100') / whole.amount)


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, computed figures and lifecycle state"""
    customer_id: str
    account_number: str                 # disbursement and default repayment account
    branch_id: Optional[str]
    loan_type: LoanType
    currency: Currency
    principal: Money
    interest_rate: Decimal              # annual, percent
    tenure_months: int
    outstanding_balance: Money
    loan_status: LoanStatus = LoanStatus.APPLICATION
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    disbursement_status: DisbursementStatus = DisbursementStatus.PENDING
    emi: Optional[Money] = None
    total_interest: Optional[Money] = None
    total_amount: Optional[Money] = None
    disbursed_amount: Optional[Money] = None
    total_paid: Optional[Money] = None
    written_off_amount: Optional[Money] = None
    purpose: str = ""
    application_date: Optional[date] = None
    approval_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    maturity_date: Optional[date] = None
    closed_date: Optional[date] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    remarks: Optional[str] = None
    foreclosure_date: Optional[date] = None
    foreclosure_amount: Optional[Money] = None
    foreclosure_transaction_id: Optional[str] = None
    monthly_income: Optional[Money] = None
    collateral_value: Optional[Money] = None

    def __post_init__(self):
        zero = Money.zero(self.currency)
        if self.disbursed_amount is None:
            self.disbursed_amount = zero
        if self.total_paid is None:
            self.total_paid = zero
        if self.written_off_amount is None:
            self.written_off_amount = zero


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """
    One installment of a loan's repayment schedule

    Payments are allocated penalty first, then interest, then principal;
    the *_paid fields record that allocation.
    """
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    balance_after: Money
    penalty: Money
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    status: ScheduleStatus = ScheduleStatus.PENDING
    payment_date: Optional[date] = None
    transaction_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ENTRY_STATUSES

    @property
    def paid_amount(self) -> Money:
        return self.penalty_paid + self.interest_paid + self.principal_paid

    @property
    def unpaid_penalty(self) -> Money:
        return self.penalty - self.penalty_paid

    @property
    def unpaid_interest(self) -> Money:
        return self.interest_amount - self.interest_paid

    @property
    def unpaid_principal(self) -> Money:
        return self.principal_amount - self.principal_paid

    @property
    def amount_due(self) -> Money:
        return self.unpaid_penalty + self.unpaid_interest + self.unpaid_principal

    def allocate(self, payment: Money) -> Money:
        """
        Apply a payment to this entry

        Returns:
            The principal portion of the payment
        """
        penalty_part = min(payment, self.unpaid_penalty)
        self.penalty_paid = self.penalty_paid + penalty_part
        payment = payment - penalty_part

        interest_part = min(payment, self.unpaid_interest)
        self.interest_paid = self.interest_paid + interest_part
        payment = payment - interest_part

        principal_part = min(payment, self.unpaid_principal)
        self.principal_paid = self.principal_paid + principal_part
        return principal_part


@dataclass
class LoanApprovalHistory(StorageRecord):
    """Append-only approval trail entry"""
    loan_id: str
    stage: ApprovalStage
    decision: ApprovalDecision
    actor_id: str
    comments: str = ""
    conditions: List[str] = field(default_factory=list)


@dataclass
class LoanDisbursement(StorageRecord):
    """Record of one disbursement attempt"""
    loan_id: str
    amount: Money
    account_number: str
    status: DisbursementStatus
    disbursement_date: date
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class ForeclosureQuote:
    """Breakdown of the amount needed to close a loan early"""
    loan_id: str
    as_of: date
    outstanding_principal: Money
    unpaid_interest: Money
    unpaid_penalty: Money
    accrued_interest: Money
    foreclosure_charge: Money
    settlement_amount: Money


@dataclass
class EMIPreview:
    principal: Money
    interest_rate: Decimal
    tenure_months: int
    emi: Money
    total_interest: Money
    total_amount: Money


@dataclass
class LoanEligibility:
    """
    Outcome of the pre-application checks

    Ratios are percentages rounded to two places; dti_ratio is None when no
    monthly income was supplied and ltv_ratio is None for unsecured loans.
    """
    customer_id: str
    loan_type: LoanType
    eligible: bool
    reasons: List[str]
    proposed_emi: Money
    existing_emi: Money
    dti_ratio: Optional[Decimal] = None
    ltv_ratio: Optional[Decimal] = None


@dataclass
class LoanSearchResult:
    loans: List[Loan]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class LoanManager:
    """
    Manages loan lifecycle from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: LedgerEngine,
        audit_trail: AuditTrail,
        locks: Optional[LockManager] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks
        self.config = config or ledger.config
        self.logger = get_logger("bank_ledger.loans")

        self.loans_table = "loans"
        self.schedule_table = "loan_schedules"
        self.history_table = "loan_approval_history"
        self.disbursements_table = "loan_disbursements"

    # Application and approval

    def apply_for_loan(
        self,
        customer_id: str,
        loan_type: LoanType,
        principal: AmountInput,
        annual_rate: Union[Decimal, str, int],
        tenure_months: int,
        account_number: str,
        branch_id: Optional[str] = None,
        purpose: str = "",
        application_date: Optional[date] = None,
        monthly_income: Optional[AmountInput] = None,
        collateral_value: Optional[AmountInput] = None,
        context: Optional[CallerContext] = None
    ) -> Loan:
        """
        Register a loan application

        Args:
            customer_id: Borrower
            loan_type: Loan product
            principal: Requested principal
            annual_rate: Annual interest rate in percent
            tenure_months: Number of monthly installments
            account_number: Borrower account for disbursement and repayment
            branch_id: Originating branch (defaults to the caller's branch)
            purpose: Free text purpose
            application_date: Defaults to today
            monthly_income: Borrower income, enables the debt-to-income check
            collateral_value: Required for secured loan types
            context: Caller identity

        Returns:
            Loan in APPLICATION status with no schedule

        Raises:
            ValidationFailed: If principal, rate or tenure are out of bounds,
                or the eligibility checks fail (reasons in details)
            NotFound: If the account does not exist
        """
        context = resolve_context(context)
        account = self.account_manager.require_account(account_number)
        if account.customer_id != customer_id:
            raise ValidationFailed(
                f"Account {account_number} does not belong to customer {customer_id}"
            )

        money = parse_amount(principal, account.currency)
        rate = self._validate_terms(money, annual_rate, tenure_months)
        income = self._optional_amount(monthly_income, account.currency)
        collateral = self._optional_amount(collateral_value, account.currency)

        eligibility = self._evaluate(customer_id, loan_type, money, rate, tenure_months,
                                     account, income, collateral)
        if not eligibility.eligible:
            self._log(context, "warning", f"Loan application for {customer_id} rejected",
                      "loan_application_rejected", account_number,
                      {"reasons": eligibility.reasons})
            raise ValidationFailed(
                f"Loan application rejected: {'; '.join(eligibility.reasons)}",
                details={"reasons": eligibility.reasons}
            )

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=f"LN{uuid.uuid4().hex[:12].upper()}",
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            account_number=account_number,
            branch_id=branch_id or context.branch_id or account.branch_id,
            loan_type=loan_type,
            currency=account.currency,
            principal=money,
            interest_rate=rate,
            tenure_months=tenure_months,
            outstanding_balance=Money.zero(account.currency),
            purpose=purpose,
            application_date=application_date or date.today(),
            monthly_income=income,
            collateral_value=collateral
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self._add_history(loan.id, ApprovalStage.APPLICATION_REVIEW,
                              ApprovalDecision.PENDING, context, "Application received")
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "customer_id": customer_id,
                    "loan_type": loan_type.value,
                    "principal": str(money.amount),
                    "interest_rate": str(rate),
                    "tenure_months": tenure_months
                },
                user_id=context.actor_id,
                correlation_id=context.correlation_id
            )

        self._log(context, "info", f"Loan {loan.id} applied", "loan_applied", loan.id,
                  {"principal": str(money.amount)})
        return loan

    def check_eligibility(
        self,
        customer_id: str,
        loan_type: LoanType,
        principal: AmountInput,
        annual_rate: Union[Decimal, str, int],
        tenure_months: int,
        account_number: str,
        monthly_income: Optional[AmountInput] = None,
        collateral_value: Optional[AmountInput] = None
    ) -> LoanEligibility:
        """
        Evaluate a prospective application without storing anything

        Every failed rule adds a reason:

        - the account belongs to the customer, is ACTIVE and its KYC is VERIFIED
        - the customer has no DEFAULTED loan
        - a supplied monthly income meets the minimum, and the EMIs of the
          customer's ACTIVE loans plus the proposed EMI stay within the
          debt-to-income limit
        - secured loan types carry collateral within the loan-to-value limit

        Raises:
            ValidationFailed: If principal, rate or tenure are out of bounds
            NotFound: If the account does not exist
        """
        account = self.account_manager.require_account(account_number)
        money = parse_amount(principal, account.currency)
        rate = self._validate_terms(money, annual_rate, tenure_months)
        return self._evaluate(
            customer_id, loan_type, money, rate, tenure_months, account,
            self._optional_amount(monthly_income, account.currency),
            self._optional_amount(collateral_value, account.currency)
        )

    def start_processing(
        self,
        loan_id: str,
        stage: ApprovalStage = ApprovalStage.DOCUMENT_VERIFICATION,
        comments: str = "",
        context: Optional[CallerContext] = None
    ) -> Loan:
        """Move an APPLICATION into PROCESSING"""
        context = resolve_context(context)
        self.require_loan(loan_id)

        with self.locks.acquire(LockKey.loan(loan_id)):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.loan_status != LoanStatus.APPLICATION or \
                        loan.approval_status != ApprovalStatus.PENDING:
                    raise InvalidState(
                        f"Loan {loan_id} is {loan.loan_status.value}, not an open application"
                    )
                loan.loan_status = LoanStatus.PROCESSING
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)
                self._add_history(loan_id, stage, ApprovalDecision.PENDING, context, comments)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PROCESSING,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={"stage": stage.value},
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        return loan

    def approve_loan(
        self,
        loan_id: str,
        comments: str = "",
        conditions: Optional[List[str]] = None,
        interest_rate_override: Optional[Union[Decimal, str]] = None,
        approval_date: Optional[date] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[Loan, List[RepaymentScheduleEntry]]:
        """
        Approve a loan and generate its repayment schedule

        Due dates are anchored at the approval date and re-anchored to the
        actual disbursement date when the funds are released.

        Returns:
            Tuple of (approved Loan, repayment schedule)

        Raises:
            InvalidState: If the loan is not an open application
        """
        context = resolve_context(context)
        self.require_loan(loan_id)
        approval_date = approval_date or date.today()

        with self.locks.acquire(LockKey.loan(loan_id)):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.loan_status not in (LoanStatus.APPLICATION, LoanStatus.PROCESSING) or \
                        loan.approval_status != ApprovalStatus.PENDING:
                    raise InvalidState(
                        f"Loan {loan_id} cannot be approved from "
                        f"{loan.loan_status.value}/{loan.approval_status.value}"
                    )

                if interest_rate_override is not None:
                    loan.interest_rate = self._validate_terms(
                        loan.principal, interest_rate_override, loan.tenure_months
                    )

                schedule = self._generate_schedule(loan, approval_date)
                total_interest = sum((e.interest_amount for e in schedule), Money.zero(loan.currency))

                loan.emi = Money(
                    calculate_emi(loan.principal.amount, loan.interest_rate, loan.tenure_months),
                    loan.currency
                )
                loan.total_interest = total_interest
                loan.total_amount = loan.principal + total_interest
                loan.outstanding_balance = loan.principal
                loan.maturity_date = schedule[-1].due_date
                loan.loan_status = LoanStatus.APPROVED
                loan.approval_status = ApprovalStatus.APPROVED
                loan.approval_date = approval_date
                loan.approved_by = context.actor_id
                loan.updated_at = datetime.now(timezone.utc)

                self._save_loan(loan)
                for entry in schedule:
                    self._save_entry(entry)
                self._add_history(loan_id, ApprovalStage.FINAL_APPROVAL,
                                  ApprovalDecision.APPROVED, context, comments, conditions)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_APPROVED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "emi": str(loan.emi.amount),
                        "total_interest": str(total_interest.amount),
                        "interest_rate": str(loan.interest_rate),
                        "installments": len(schedule)
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"Loan {loan_id} approved", "loan_approved", loan_id,
                  {"emi": str(loan.emi.amount)})
        return loan, schedule

    def reject_loan(
        self,
        loan_id: str,
        reason: str,
        context: Optional[CallerContext] = None
    ) -> Loan:
        """Reject an open application; terminal for this application"""
        context = resolve_context(context)
        if not reason:
            raise ValidationFailed("A rejection reason is required")
        self.require_loan(loan_id)

        with self.locks.acquire(LockKey.loan(loan_id)):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.loan_status not in (LoanStatus.APPLICATION, LoanStatus.PROCESSING) or \
                        loan.approval_status != ApprovalStatus.PENDING:
                    raise InvalidState(
                        f"Loan {loan_id} cannot be rejected from "
                        f"{loan.loan_status.value}/{loan.approval_status.value}"
                    )

                loan.approval_status = ApprovalStatus.REJECTED
                loan.rejection_reason = reason
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)
                self._add_history(loan_id, ApprovalStage.FINAL_APPROVAL,
                                  ApprovalDecision.REJECTED, context, reason)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_REJECTED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={"reason": reason},
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"Loan {loan_id} rejected", "loan_rejected", loan_id,
                  {"reason": reason})
        return loan

    # Disbursement

    def disburse_loan(
        self,
        loan_id: str,
        amount: Optional[AmountInput] = None,
        target_account: Optional[str] = None,
        disbursement_date: Optional[date] = None,
        reference: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[Loan, LoanDisbursement]:
        """
        Credit the approved principal to the borrower's account

        Args:
            loan_id: Loan to disburse
            amount: Must equal the approved principal (defaults to it)
            target_account: Account to credit (defaults to the loan account)
            disbursement_date: Defaults to today; re-anchors the due dates
            reference: Reference number for the ledger credit
            context: Caller identity

        Returns:
            Tuple of (ACTIVE Loan, COMPLETED LoanDisbursement)

        Raises:
            LoanAlreadyDisbursed: If the loan was already disbursed
            InvalidState: If the loan is not approved
            DisbursementFailed: If the ledger credit fails; the loan stays
                PENDING and a FAILED disbursement record is kept
        """
        context = resolve_context(context)
        loan = self.require_loan(loan_id)
        target_account = target_account or loan.account_number
        self.account_manager.require_account(target_account)
        if amount is not None and parse_amount(amount, loan.currency) != loan.principal:
            raise ValidationFailed(
                f"Disbursement amount must equal the approved principal {loan.principal.to_string()}"
            )
        disbursement_date = disbursement_date or date.today()

        with self.locks.acquire(LockKey.loan(loan_id), LockKey.account(target_account)):
            loan = self.require_loan(loan_id)
            if loan.disbursement_status == DisbursementStatus.COMPLETED:
                raise LoanAlreadyDisbursed(f"Loan {loan_id} has already been disbursed")
            if loan.approval_status != ApprovalStatus.APPROVED or \
                    loan.loan_status != LoanStatus.APPROVED or \
                    loan.disbursement_status != DisbursementStatus.PENDING:
                raise InvalidState(
                    f"Loan {loan_id} is not ready for disbursement "
                    f"({loan.loan_status.value}/{loan.approval_status.value}/"
                    f"{loan.disbursement_status.value})"
                )

            try:
                with self.storage.atomic():
                    loan.disbursement_status = DisbursementStatus.SCHEDULED
                    self._save_loan(loan)

                    try:
                        transaction = self.ledger.post_credit(
                            target_account, loan.principal,
                            transaction_type=TransactionType.DEPOSIT,
                            description=f"Loan disbursement {loan_id}",
                            reference=reference,
                            related_entity_type="loan",
                            related_entity_id=loan_id,
                            context=context
                        )
                    except BankingError as error:
                        raise DisbursementFailed(
                            f"Disbursement of loan {loan_id} failed: {error.message}",
                            details={"cause": error.kind, "account_number": target_account}
                        ) from error

                    loan.disbursed_amount = loan.principal
                    loan.disbursement_status = DisbursementStatus.COMPLETED
                    loan.loan_status = LoanStatus.ACTIVE
                    loan.disbursement_date = disbursement_date
                    loan.updated_at = datetime.now(timezone.utc)

                    schedule = self.get_schedule(loan_id)
                    for entry in schedule:
                        entry.due_date = add_months(disbursement_date, entry.installment_number)
                        self._save_entry(entry)
                    if schedule:
                        loan.maturity_date = schedule[-1].due_date
                    self._save_loan(loan)

                    disbursement = self._new_disbursement(
                        loan, target_account, DisbursementStatus.COMPLETED,
                        disbursement_date, transaction_id=transaction.id
                    )
                    self._save_disbursement(disbursement)

                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_DISBURSED,
                        entity_type="loan",
                        entity_id=loan_id,
                        metadata={
                            "amount": str(loan.principal.amount),
                            "account_number": target_account,
                            "transaction_id": transaction.id
                        },
                        user_id=context.actor_id,
                        correlation_id=context.correlation_id
                    )
            except DisbursementFailed as error:
                failed = self._new_disbursement(
                    loan, target_account, DisbursementStatus.FAILED,
                    disbursement_date, failure_reason=error.message
                )
                self._save_disbursement(failed, out_of_band=True)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_DISBURSEMENT_FAILED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={"reason": error.message, "account_number": target_account},
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id,
                    out_of_band=True
                )
                self._log(context, "warning", f"Disbursement of loan {loan_id} failed",
                          "loan_disbursement_failed", loan_id, {"reason": error.message})
                raise

        self._log(context, "info", f"Loan {loan_id} disbursed", "loan_disbursed", loan_id,
                  {"amount": str(loan.principal.amount), "account": target_account})
        return loan, disbursement

    # Repayment

    def repay_loan(
        self,
        loan_id: str,
        amount: AmountInput,
        payment_date: Optional[date] = None,
        mode: TransferMode = TransferMode.INTERNAL,
        from_account: Optional[str] = None,
        reference: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[Transaction, List[RepaymentScheduleEntry]]:
        """
        Apply a repayment to the oldest open installments

        The payment settles the earliest PENDING/OVERDUE entry first (penalty,
        then interest, then principal) and overflows into later entries. The
        loan closes when every entry is PAID.

        Args:
            loan_id: Loan being repaid
            amount: Payment amount; may not exceed the total still due
            payment_date: Defaults to today; entries due before it turn OVERDUE
            mode: Payment channel recorded on the transaction
            from_account: Paying account (defaults to the loan account)
            reference: Idempotency key for the payment
            context: Caller identity

        Returns:
            Tuple of (payment Transaction, updated schedule)
        """
        context = resolve_context(context)
        loan = self.require_loan(loan_id)
        paying_account = from_account or loan.account_number
        self.account_manager.require_account(paying_account)
        money = parse_amount(amount, loan.currency)
        payment_date = payment_date or date.today()

        with self.locks.acquire(
            LockKey.reference(reference) if reference else None,
            LockKey.loan(loan_id),
            LockKey.account(paying_account)
        ):
            if reference:
                prior = self._replayed(reference, loan_id, money)
                if prior:
                    return prior, self.get_schedule(loan_id)

            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.loan_status != LoanStatus.ACTIVE:
                    raise InvalidState(f"Loan {loan_id} is {loan.loan_status.value}, not active")

                schedule = self.get_schedule(loan_id)
                open_entries = [e for e in schedule if e.is_open]
                self._assess_overdue(loan, open_entries, payment_date)

                total_due = sum((e.amount_due for e in open_entries), Money.zero(loan.currency))
                if money > total_due:
                    raise ValidationFailed(
                        f"Payment {money.to_string()} exceeds the amount due {total_due.to_string()}",
                        details={"amount_due": str(total_due.amount)}
                    )

                transaction = self._post(lambda: self.ledger.post_debit(
                    paying_account, money,
                    transaction_type=TransactionType.PAYMENT,
                    mode=mode,
                    description=_repayment_description(loan_id),
                    reference=reference,
                    related_entity_type="loan",
                    related_entity_id=loan_id,
                    context=context
                ))

                remaining = money
                principal_reduction = Money.zero(loan.currency)
                touched = []
                for entry in open_entries:
                    if not remaining.is_positive():
                        break
                    portion = min(remaining, entry.amount_due)
                    principal_reduction = principal_reduction + entry.allocate(portion)
                    remaining = remaining - portion
                    entry.transaction_id = transaction.id
                    if entry.amount_due.is_zero():
                        entry.status = ScheduleStatus.PAID
                        entry.payment_date = payment_date
                    touched.append(entry)

                for entry in open_entries:
                    self._save_entry(entry)

                loan.outstanding_balance = loan.outstanding_balance - principal_reduction
                loan.total_paid = loan.total_paid + money
                loan.updated_at = datetime.now(timezone.utc)

                closed = all(e.status == ScheduleStatus.PAID for e in schedule)
                if closed:
                    loan.loan_status = LoanStatus.CLOSED
                    loan.closed_date = payment_date
                    loan.outstanding_balance = Money.zero(loan.currency)
                self._save_loan(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_REPAYMENT,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "amount": str(money.amount),
                        "principal_reduction": str(principal_reduction.amount),
                        "installments": [e.installment_number for e in touched],
                        "outstanding_balance": str(loan.outstanding_balance.amount),
                        "transaction_id": transaction.id
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )
                if closed:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_CLOSED,
                        entity_type="loan",
                        entity_id=loan_id,
                        metadata={"total_paid": str(loan.total_paid.amount)},
                        user_id=context.actor_id,
                        correlation_id=context.correlation_id
                    )

        self._log(context, "info", f"Repayment of {money.to_string()} on loan {loan_id}",
                  "loan_repayment", loan_id,
                  {"outstanding": str(loan.outstanding_balance.amount),
                   "status": loan.loan_status.value})
        return transaction, schedule

    # Foreclosure

    def foreclosure_quote(self, loan_id: str, as_of: Optional[date] = None) -> ForeclosureQuote:
        """Settlement needed to close an ACTIVE loan on a date; nothing is changed"""
        loan = self.require_loan(loan_id)
        if loan.loan_status != LoanStatus.ACTIVE:
            raise InvalidState(f"Loan {loan_id} is {loan.loan_status.value}, not active")
        as_of = as_of or date.today()
        open_entries = [e for e in self.get_schedule(loan_id) if e.is_open]
        self._assess_overdue(loan, open_entries, as_of)
        return self._quote(loan, open_entries, as_of)

    def foreclose_loan(
        self,
        loan_id: str,
        foreclosure_date: Optional[date] = None,
        settlement_account: Optional[str] = None,
        reference: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[Loan, Transaction]:
        """
        Close an ACTIVE loan early with one settlement debit

        Settlement is the outstanding principal plus unpaid billed interest
        and penalties, the interest accrued so far in the current period and
        the configured foreclosure charge. All remaining entries are WAIVED.

        Returns:
            Tuple of (CLOSED Loan, settlement Transaction)
        """
        context = resolve_context(context)
        loan = self.require_loan(loan_id)
        settlement_account = settlement_account or loan.account_number
        self.account_manager.require_account(settlement_account)
        foreclosure_date = foreclosure_date or date.today()

        with self.locks.acquire(
            LockKey.reference(reference) if reference else None,
            LockKey.loan(loan_id),
            LockKey.account(settlement_account)
        ):
            if reference:
                prior = self.ledger.find_by_reference(reference)
                if prior is not None:
                    loan = self.require_loan(loan_id)
                    settled = prior.id == loan.foreclosure_transaction_id
                    failed_attempt = (
                        prior.status == TransactionStatus.FAILED and
                        prior.related_entity_id == loan_id and
                        prior.description == _foreclosure_description(loan_id)
                    )
                    if not (settled or failed_attempt):
                        raise ValidationFailed(
                            f"Reference {reference} was already used for a different request"
                        )
                    return loan, prior

            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.loan_status != LoanStatus.ACTIVE:
                    raise InvalidState(f"Loan {loan_id} is {loan.loan_status.value}, not active")

                open_entries = [e for e in self.get_schedule(loan_id) if e.is_open]
                self._assess_overdue(loan, open_entries, foreclosure_date)
                quote = self._quote(loan, open_entries, foreclosure_date)

                transaction = self._post(lambda: self.ledger.post_debit(
                    settlement_account, quote.settlement_amount,
                    transaction_type=TransactionType.PAYMENT,
                    description=_foreclosure_description(loan_id),
                    reference=reference,
                    related_entity_type="loan",
                    related_entity_id=loan_id,
                    context=context
                ))

                for entry in open_entries:
                    entry.status = ScheduleStatus.WAIVED
                    entry.payment_date = foreclosure_date
                    entry.transaction_id = transaction.id
                    self._save_entry(entry)

                loan.total_paid = loan.total_paid + quote.settlement_amount
                loan.outstanding_balance = Money.zero(loan.currency)
                loan.loan_status = LoanStatus.CLOSED
                loan.closed_date = foreclosure_date
                loan.foreclosure_date = foreclosure_date
                loan.foreclosure_amount = quote.settlement_amount
                loan.foreclosure_transaction_id = transaction.id
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_FORECLOSED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "settlement_amount": str(quote.settlement_amount.amount),
                        "outstanding_principal": str(quote.outstanding_principal.amount),
                        "accrued_interest": str(quote.accrued_interest.amount),
                        "transaction_id": transaction.id
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"Loan {loan_id} foreclosed", "loan_foreclosed", loan_id,
                  {"settlement": str(quote.settlement_amount.amount)})
        return loan, transaction

    # Default sweep

    def mark_defaults(self, as_of: Optional[date] = None,
                      grace_days: Optional[int] = None,
                      context: Optional[CallerContext] = None) -> Dict[str, int]:
        """
        Flag past-due installments and default seriously delinquent loans

        Every ACTIVE loan has its past-due entries marked OVERDUE with a late
        penalty. A loan whose earliest unpaid entry fell due more than
        ``grace_days`` before ``as_of`` becomes DEFAULTED and its outstanding
        balance is recorded as written off. No ledger posting is reversed.

        Returns:
            Counts of loans scanned, loans defaulted, entries newly marked
            overdue and loans that could not be processed
        """
        context = resolve_context(context)
        as_of = as_of or date.today()
        if grace_days is None:
            grace_days = self.config.loan_default_grace_days
        threshold = as_of - timedelta(days=grace_days)

        results = {"loans_scanned": 0, "loans_defaulted": 0,
                   "entries_marked_overdue": 0, "errors": 0}

        for loan in self.list_loans(LoanStatus.ACTIVE):
            results["loans_scanned"] += 1
            try:
                with self.locks.acquire(LockKey.loan(loan.id)):
                    with self.storage.atomic():
                        current = self.require_loan(loan.id)
                        if current.loan_status != LoanStatus.ACTIVE:
                            continue

                        open_entries = [e for e in self.get_schedule(loan.id) if e.is_open]
                        results["entries_marked_overdue"] += self._assess_overdue(
                            current, open_entries, as_of
                        )
                        for entry in open_entries:
                            self._save_entry(entry)

                        if open_entries and min(e.due_date for e in open_entries) < threshold:
                            self._default(current, open_entries, as_of, grace_days, context)
                            results["loans_defaulted"] += 1
            except Exception as e:
                results["errors"] += 1
                self._log(context, "error", f"Default processing failed for loan {loan.id}",
                          "loan_default_sweep_failed", loan.id, {"error": str(e)})

        self.audit_trail.log_event(
            event_type=AuditEventType.SWEEP_COMPLETED,
            entity_type="loan",
            entity_id="mark_defaults",
            metadata=dict(results, as_of=as_of.isoformat()),
            user_id=context.actor_id,
            correlation_id=context.correlation_id
        )
        self._log(context, "info", "Loan default sweep completed", "loan_default_sweep",
                  "loans", results)
        return results

    def _default(self, loan: Loan, open_entries: List[RepaymentScheduleEntry],
                 as_of: date, grace_days: int, context: CallerContext) -> None:
        loan.loan_status = LoanStatus.DEFAULTED
        loan.written_off_amount = loan.outstanding_balance
        loan.remarks = (
            f"Defaulted on {as_of.isoformat()}: installment overdue more than {grace_days} days"
        )
        loan.updated_at = datetime.now(timezone.utc)
        self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "written_off_amount": str(loan.written_off_amount.amount),
                "overdue_installments": [
                    e.installment_number for e in open_entries
                    if e.status == ScheduleStatus.OVERDUE
                ]
            },
            user_id=context.actor_id,
            correlation_id=context.correlation_id
        )

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return self._loan_from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found", details={"loan_id": loan_id})
        return loan

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """Get all loans for a customer"""
        data = self.storage.find(self.loans_table, {"customer_id": customer_id})
        return [self._loan_from_dict(d) for d in data]

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status:
            data = self.storage.find(self.loans_table, {"loan_status": status.value})
        else:
            data = self.storage.load_all(self.loans_table)
        return [self._loan_from_dict(d) for d in data]

    def get_pending_approval_loans(self, branch_id: Optional[str] = None) -> List[Loan]:
        """Loans awaiting an approval decision, oldest application first"""
        criteria = {"approval_status": ApprovalStatus.PENDING.value}
        if branch_id:
            criteria["branch_id"] = branch_id
        loans = [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, criteria)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def search_loans(
        self,
        customer_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        branch_id: Optional[str] = None,
        page: int = 0,
        page_size: int = 20
    ) -> LoanSearchResult:
        """
        Filter loans and return one page, newest application first

        Args:
            customer_id: Borrower filter
            status: Lifecycle status filter
            loan_type: Product filter
            branch_id: Originating branch filter
            page: Zero-based page number
            page_size: Loans per page, 1 to 100

        Raises:
            ValidationFailed: If page or page_size are out of range
        """
        if page < 0:
            raise ValidationFailed("Page number cannot be negative")
        if not 1 <= page_size <= 100:
            raise ValidationFailed("Page size must be between 1 and 100")

        criteria = {}
        if customer_id:
            criteria["customer_id"] = customer_id
        if status:
            criteria["loan_status"] = status.value
        if loan_type:
            criteria["loan_type"] = loan_type.value
        if branch_id:
            criteria["branch_id"] = branch_id

        loans = [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, criteria)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)

        total = len(loans)
        start = page * page_size
        return LoanSearchResult(
            loans=loans[start:start + page_size],
            total_count=total,
            page=page,
            page_size=page_size,
            total_pages=-(-total // page_size)
        )

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Repayment schedule ordered by installment number"""
        data = self.storage.find(self.schedule_table, {"loan_id": loan_id})
        schedule = [self._entry_from_dict(d) for d in data]
        schedule.sort(key=lambda e: e.installment_number)
        return schedule

    def get_approval_history(self, loan_id: str) -> List[LoanApprovalHistory]:
        data = self.storage.find(self.history_table, {"loan_id": loan_id})
        history = [self._history_from_dict(d) for d in data]
        history.sort(key=lambda h: h.created_at)
        return history

    def get_disbursements(self, loan_id: str) -> List[LoanDisbursement]:
        data = self.storage.find(self.disbursements_table, {"loan_id": loan_id})
        disbursements = [self._disbursement_from_dict(d) for d in data]
        disbursements.sort(key=lambda d: d.created_at)
        return disbursements

    def calculate_emi_preview(self, principal: AmountInput, annual_rate: Union[Decimal, str, int],
                              tenure_months: int, currency: Currency = Currency.USD) -> EMIPreview:
        """Projected EMI and totals for prospective terms; nothing is stored"""
        money = parse_amount(principal, currency)
        rate = self._validate_terms(money, annual_rate, tenure_months)
        rows = build_schedule(money.amount, rate, tenure_months, date.today())
        total_interest = Money(sum(r.interest for r in rows), currency)
        return EMIPreview(
            principal=money,
            interest_rate=rate,
            tenure_months=tenure_months,
            emi=Money(calculate_emi(money.amount, rate, tenure_months), currency),
            total_interest=total_interest,
            total_amount=money + total_interest
        )

    # Internals

    def _validate_terms(self, principal: Money, annual_rate: Union[Decimal, str, int],
                        tenure_months: int) -> Decimal:
        if isinstance(annual_rate, float):
            raise ValidationFailed("Interest rate must be Decimal, int or str, never float")
        rate = Decimal(str(annual_rate))
        cfg = self.config

        if not (Decimal(cfg.loan_min_principal) <= principal.amount <= Decimal(cfg.loan_max_principal)):
            raise ValidationFailed(
                f"Principal must be between {cfg.loan_min_principal} and {cfg.loan_max_principal}"
            )
        if not isinstance(tenure_months, int) or \
                not (cfg.loan_min_tenure_months <= tenure_months <= cfg.loan_max_tenure_months):
            raise ValidationFailed(
                f"Tenure must be between {cfg.loan_min_tenure_months} and "
                f"{cfg.loan_max_tenure_months} months"
            )
        if not (Decimal('0') <= rate <= Decimal(cfg.loan_max_interest_rate)):
            raise ValidationFailed(
                f"Interest rate must be between 0 and {cfg.loan_max_interest_rate} percent"
            )
        return rate

    @staticmethod
    def _optional_amount(value: Optional[AmountInput], currency: Currency) -> Optional[Money]:
        return parse_amount(value, currency) if value is not None else None

    def _evaluate(self, customer_id: str, loan_type: LoanType, principal: Money,
                  rate: Decimal, tenure_months: int, account: Account,
                  income: Optional[Money], collateral: Optional[Money]) -> LoanEligibility:
        cfg = self.config
        reasons = []

        if account.customer_id != customer_id:
            reasons.append(
                f"Account {account.account_number} does not belong to customer {customer_id}"
            )
        if account.status != AccountStatus.ACTIVE:
            reasons.append(f"Account {account.account_number} is {account.status.value}")
        if account.kyc_status != KYCStatus.VERIFIED:
            reasons.append(f"KYC is {account.kyc_status.value}, not verified")

        customer_loans = self.get_customer_loans(customer_id)
        if any(loan.loan_status == LoanStatus.DEFAULTED for loan in customer_loans):
            reasons.append("Customer has defaulted loans")

        currency = principal.currency
        proposed_emi = Money(calculate_emi(principal.amount, rate, tenure_months), currency)
        existing_emi = sum(
            (loan.emi for loan in customer_loans
             if loan.loan_status == LoanStatus.ACTIVE and loan.emi is not None
             and loan.currency == currency),
            Money.zero(currency)
        )

        dti_ratio = None
        if income is not None:
            if income.amount < Decimal(cfg.loan_min_monthly_income):
                reasons.append(f"Monthly income is below the minimum of {cfg.loan_min_monthly_income}")
            dti_ratio = _percent(existing_emi + proposed_emi, income)
            if dti_ratio > Decimal(cfg.loan_max_dti_ratio):
                reasons.append(
                    f"Debt-to-income ratio {dti_ratio}% exceeds {cfg.loan_max_dti_ratio}%"
                )

        ltv_ratio = None
        if loan_type in SECURED_LOAN_TYPES:
            if collateral is None:
                reasons.append(f"Collateral is required for {loan_type.value}")
            else:
                ltv_ratio = _percent(principal, collateral)
                if ltv_ratio > Decimal(cfg.loan_max_ltv_ratio):
                    reasons.append(
                        f"Loan-to-value ratio {ltv_ratio}% exceeds {cfg.loan_max_ltv_ratio}%"
                    )

        return LoanEligibility(
            customer_id=customer_id,
            loan_type=loan_type,
            eligible=not reasons,
            reasons=reasons,
            proposed_emi=proposed_emi,
            existing_emi=existing_emi,
            dti_ratio=dti_ratio,
            ltv_ratio=ltv_ratio
        )

    def _generate_schedule(self, loan: Loan, anchor_date: date) -> List[RepaymentScheduleEntry]:
        now = datetime.now(timezone.utc)
        zero = Money.zero(loan.currency)
        return [
            RepaymentScheduleEntry(
                id=f"{loan.id}-{row.installment_number:03d}",
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=row.installment_number,
                due_date=row.due_date,
                principal_amount=Money(row.principal, loan.currency),
                interest_amount=Money(row.interest, loan.currency),
                total_amount=Money(row.total, loan.currency),
                balance_after=Money(row.balance_after, loan.currency),
                penalty=zero,
                penalty_paid=zero,
                interest_paid=zero,
                principal_paid=zero
            )
            for row in build_schedule(loan.principal.amount, loan.interest_rate,
                                      loan.tenure_months, anchor_date)
        ]

    def _assess_overdue(self, loan: Loan, open_entries: List[RepaymentScheduleEntry],
                        as_of: date) -> int:
        """Mark past-due entries OVERDUE and raise their late penalty; returns newly overdue"""
        newly_overdue = 0
        for entry in open_entries:
            if entry.due_date >= as_of:
                continue
            if entry.status == ScheduleStatus.PENDING:
                entry.status = ScheduleStatus.OVERDUE
                newly_overdue += 1

            unpaid = entry.unpaid_interest + entry.unpaid_principal
            penalty = Money(
                late_penalty(unpaid.amount, self.config.loan_late_penalty_rate,
                             (as_of - entry.due_date).days),
                loan.currency
            )
            if penalty > entry.penalty:
                entry.penalty = penalty
            entry.updated_at = datetime.now(timezone.utc)
        return newly_overdue

    def _quote(self, loan: Loan, open_entries: List[RepaymentScheduleEntry],
               as_of: date) -> ForeclosureQuote:
        zero = Money.zero(loan.currency)
        unpaid_interest = zero
        unpaid_penalty = zero
        accrued = zero

        for entry in open_entries:
            if entry.due_date <= as_of:
                unpaid_interest = unpaid_interest + entry.unpaid_interest
                unpaid_penalty = unpaid_penalty + entry.unpaid_penalty

        current = next((e for e in open_entries if e.due_date > as_of), None)
        if current is not None:
            if loan.disbursement_date:
                period_start = add_months(loan.disbursement_date, current.installment_number - 1)
            else:
                period_start = add_months(current.due_date, -1)
            earned = prorated_interest(current.interest_amount.amount, period_start,
                                       current.due_date, as_of)
            accrued = Money(max(earned - current.interest_paid.amount, Decimal('0')), loan.currency)

        charge = Money(
            round_money(loan.outstanding_balance.amount
                        * Decimal(self.config.foreclosure_charge_rate) / Decimal('100')),
            loan.currency
        )
        settlement = loan.outstanding_balance + unpaid_interest + unpaid_penalty + accrued + charge

        return ForeclosureQuote(
            loan_id=loan.id,
            as_of=as_of,
            outstanding_principal=loan.outstanding_balance,
            unpaid_interest=unpaid_interest,
            unpaid_penalty=unpaid_penalty,
            accrued_interest=accrued,
            foreclosure_charge=charge,
            settlement_amount=settlement
        )

    def _post(self, posting: Callable[[], Transaction]) -> Transaction:
        """Run a ledger posting, wrapping ledger failures other than insufficient funds"""
        try:
            return posting()
        except InsufficientBalance:
            raise
        except BankingError as error:
            raise ExternalPostingFailed(
                f"Ledger posting failed: {error.message}",
                details={"cause": error.kind}
            ) from error

    def _replayed(self, reference: str, loan_id: str, amount: Money) -> Optional[Transaction]:
        prior = self.ledger.find_by_reference(reference)
        if prior is None:
            return None
        if (prior.related_entity_id != loan_id or prior.amount != amount or
                prior.description != _repayment_description(loan_id)):
            raise ValidationFailed(
                f"Reference {reference} was already used for a different request"
            )
        return prior

    def _add_history(self, loan_id: str, stage: ApprovalStage, decision: ApprovalDecision,
                     context: CallerContext, comments: str = "",
                     conditions: Optional[List[str]] = None) -> LoanApprovalHistory:
        now = datetime.now(timezone.utc)
        history = LoanApprovalHistory(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            stage=stage,
            decision=decision,
            actor_id=context.actor_id,
            comments=comments,
            conditions=list(conditions or [])
        )
        result = history.to_dict()
        result['stage'] = stage.value
        result['decision'] = decision.value
        self.storage.save(self.history_table, history.id, result)
        return history

    def _new_disbursement(self, loan: Loan, account_number: str, status: DisbursementStatus,
                          disbursement_date: date, transaction_id: Optional[str] = None,
                          failure_reason: Optional[str] = None) -> LoanDisbursement:
        now = datetime.now(timezone.utc)
        return LoanDisbursement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=loan.principal,
            account_number=account_number,
            status=status,
            disbursement_date=disbursement_date,
            transaction_id=transaction_id,
            failure_reason=failure_reason
        )

    def _log(self, context: CallerContext, level: str, message: str, action: str,
             resource: str, extra: Optional[dict] = None) -> None:
        log_action(self.logger, level, message, user_id=context.actor_id, action=action,
                   resource=resource, correlation_id=context.correlation_id,
                   branch_id=context.branch_id, extra=extra)

    # Serialization

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_entry(self, entry: RepaymentScheduleEntry) -> None:
        self.storage.save(self.schedule_table, entry.id, self._entry_to_dict(entry))

    def _save_disbursement(self, disbursement: LoanDisbursement, out_of_band: bool = False) -> None:
        result = disbursement.to_dict()
        result['amount'] = str(disbursement.amount.amount)
        result['currency'] = disbursement.amount.currency.code
        result['status'] = disbursement.status.value
        result['disbursement_date'] = disbursement.disbursement_date.isoformat()
        if out_of_band:
            self.storage.save_out_of_band(self.disbursements_table, disbursement.id, result)
        else:
            self.storage.save(self.disbursements_table, disbursement.id, result)

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = loan.to_dict()
        result['loan_type'] = loan.loan_type.value
        result['currency'] = loan.currency.code
        result['interest_rate'] = str(loan.interest_rate)
        result['loan_status'] = loan.loan_status.value
        result['approval_status'] = loan.approval_status.value
        result['disbursement_status'] = loan.disbursement_status.value

        for field_name in ['principal', 'outstanding_balance', 'emi', 'total_interest',
                           'total_amount', 'disbursed_amount', 'total_paid',
                           'written_off_amount', 'foreclosure_amount', 'monthly_income',
                           'collateral_value']:
            value = getattr(loan, field_name)
            result[field_name] = str(value.amount) if value is not None else None

        for field_name in ['application_date', 'approval_date', 'disbursement_date',
                           'maturity_date', 'closed_date', 'foreclosure_date']:
            value = getattr(loan, field_name)
            result[field_name] = value.isoformat() if value else None

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        currency = Currency[data['currency']]

        def get_money(field_name: str) -> Optional[Money]:
            if data.get(field_name) is None:
                return None
            return Money(Decimal(data[field_name]), currency)

        def get_date(field_name: str) -> Optional[date]:
            if data.get(field_name):
                return date.fromisoformat(data[field_name])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            account_number=data['account_number'],
            branch_id=data.get('branch_id'),
            loan_type=LoanType(data['loan_type']),
            currency=currency,
            principal=get_money('principal'),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=data['tenure_months'],
            outstanding_balance=get_money('outstanding_balance'),
            loan_status=LoanStatus(data['loan_status']),
            approval_status=ApprovalStatus(data['approval_status']),
            disbursement_status=DisbursementStatus(data['disbursement_status']),
            emi=get_money('emi'),
            total_interest=get_money('total_interest'),
            total_amount=get_money('total_amount'),
            disbursed_amount=get_money('disbursed_amount'),
            total_paid=get_money('total_paid'),
            written_off_amount=get_money('written_off_amount'),
            purpose=data.get('purpose', ''),
            application_date=get_date('application_date'),
            approval_date=get_date('approval_date'),
            disbursement_date=get_date('disbursement_date'),
            maturity_date=get_date('maturity_date'),
            closed_date=get_date('closed_date'),
            approved_by=data.get('approved_by'),
            rejection_reason=data.get('rejection_reason'),
            remarks=data.get('remarks'),
            foreclosure_date=get_date('foreclosure_date'),
            foreclosure_amount=get_money('foreclosure_amount'),
            foreclosure_transaction_id=data.get('foreclosure_transaction_id'),
            monthly_income=get_money('monthly_income'),
            collateral_value=get_money('collateral_value')
        )

    def _entry_to_dict(self, entry: RepaymentScheduleEntry) -> Dict:
        result = entry.to_dict()
        result['currency'] = entry.principal_amount.currency.code
        result['status'] = entry.status.value
        result['due_date'] = entry.due_date.isoformat()
        result['payment_date'] = entry.payment_date.isoformat() if entry.payment_date else None
        for field_name in ['principal_amount', 'interest_amount', 'total_amount', 'balance_after',
                           'penalty', 'penalty_paid', 'interest_paid', 'principal_paid']:
            result[field_name] = str(getattr(entry, field_name).amount)
        return result

    def _entry_from_dict(self, data: Dict) -> RepaymentScheduleEntry:
        currency = Currency[data['currency']]

        def get_money(field_name: str) -> Money:
            return Money(Decimal(data[field_name]), currency)

        return RepaymentScheduleEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=get_money('principal_amount'),
            interest_amount=get_money('interest_amount'),
            total_amount=get_money('total_amount'),
            balance_after=get_money('balance_after'),
            penalty=get_money('penalty'),
            penalty_paid=get_money('penalty_paid'),
            interest_paid=get_money('interest_paid'),
            principal_paid=get_money('principal_paid'),
            status=ScheduleStatus(data['status']),
            payment_date=date.fromisoformat(data['payment_date']) if data.get('payment_date') else None,
            transaction_id=data.get('transaction_id')
        )

    def _history_from_dict(self, data: Dict) -> LoanApprovalHistory:
        return LoanApprovalHistory(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            stage=ApprovalStage(data['stage']),
            decision=ApprovalDecision(data['decision']),
            actor_id=data['actor_id'],
            comments=data.get('comments', ''),
            conditions=data.get('conditions', [])
        )

    def _disbursement_from_dict(self, data: Dict) -> LoanDisbursement:
        currency = Currency[data['currency']]
        return LoanDisbursement(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), currency),
            account_number=data['account_number'],
            status=DisbursementStatus(data['status']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            transaction_id=data.get('transaction_id'),
            failure_reason=data.get('failure_reason')
        )
