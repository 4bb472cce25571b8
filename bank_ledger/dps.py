"""
DPS Module

Deposit Pension Scheme: a recurring monthly deposit with a fixed installment
and tenure that pays out principal plus compound interest at maturity.

    ACTIVE -> MATURED | CLOSED | DEFAULTED
    ACTIVE <-> SUSPENDED

One installment is generated per month at creation. Late installments carry
a penalty (flat fee plus a percentage of the installment); penalties never
count towards the deposited total.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .money import Money, Currency, parse_amount, round_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager
from .ledger import LedgerEngine
from .locks import LockManager, LockKey
from .config import LedgerConfig
from .context import CallerContext, resolve_context
from .transactions import Transaction, TransactionType, TransferMode
from .amortization import add_months, monthly_rate, months_between
from .errors import (
    BankingError, ExternalPostingFailed, InsufficientBalance, InvalidState,
    NotFound, ValidationFailed
)
from .logging_config import get_logger, log_action


class DPSStatus(Enum):
    ACTIVE = "active"
    MATURED = "matured"
    CLOSED = "closed"
    DEFAULTED = "defaulted"
    SUSPENDED = "suspended"


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


OPEN_INSTALLMENT_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)
CLOSABLE_STATUSES = (DPSStatus.ACTIVE, DPSStatus.SUSPENDED, DPSStatus.DEFAULTED)

AmountInput = Union[Money, Decimal, int, str]


@dataclass
class DPS(StorageRecord):
    """Recurring deposit account; id is the DPS number"""
    customer_id: str
    branch_id: Optional[str]
    currency: Currency
    monthly_installment: Money
    tenure_months: int
    interest_rate: Decimal              # annual, percent
    maturity_amount: Money
    total_deposited: Money
    total_penalty: Money
    start_date: date
    maturity_date: date
    linked_account_number: Optional[str] = None
    installments_paid: int = 0
    installments_pending: int = 0
    installments_missed: int = 0
    status: DPSStatus = DPSStatus.ACTIVE
    auto_debit: bool = False
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    matured_date: Optional[date] = None
    closed_date: Optional[date] = None
    settlement_amount: Optional[Money] = None
    settlement_transaction_id: Optional[str] = None
    remarks: Optional[str] = None

    @property
    def dps_number(self) -> str:
        return self.id


@dataclass
class DPSInstallment(StorageRecord):
    """One monthly installment of a DPS"""
    dps_number: str
    installment_number: int
    due_date: date
    amount: Money
    penalty: Money
    total_paid: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_date: Optional[date] = None
    transaction_id: Optional[str] = None
    receipt_number: Optional[str] = None
    payment_mode: Optional[TransferMode] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INSTALLMENT_STATUSES


@dataclass
class MaturityProjection:
    monthly_installment: Money
    tenure_months: int
    interest_rate: Decimal
    total_deposit: Money
    interest_earned: Money
    maturity_amount: Money


def future_value(installment: Decimal, tenure_months: int, annual_rate: Decimal) -> Decimal:
    """
    Value at maturity of n monthly deposits compounded monthly

    Each deposit compounds from its due date to the maturity date, which is
    the future value of an ordinary annuity: M * ((1 + r)^n - 1) / r, or
    M * n when r is zero.
    """
    rate = monthly_rate(annual_rate)
    if rate == 0:
        return round_money(installment * Decimal(tenure_months))
    factor = (Decimal('1') + rate) ** tenure_months
    return round_money(installment * (factor - Decimal('1')) / rate)


def calculate_maturity(monthly_installment: AmountInput, tenure_months: int,
                       annual_rate: Union[Decimal, str, int],
                       currency: Currency = Currency.USD) -> MaturityProjection:
    """Projected deposits, interest and maturity amount; nothing is stored"""
    installment = parse_amount(monthly_installment, currency)
    if isinstance(annual_rate, float):
        raise ValidationFailed("Interest rate must be Decimal, int or str, never float")
    rate = Decimal(str(annual_rate))
    if not isinstance(tenure_months, int) or tenure_months <= 0:
        raise ValidationFailed("Tenure must be a positive number of months")
    if rate < 0:
        raise ValidationFailed("Interest rate cannot be negative")

    total_deposit = installment * Decimal(tenure_months)
    maturity = Money(future_value(installment.amount, tenure_months, rate), currency)
    return MaturityProjection(
        monthly_installment=installment,
        tenure_months=tenure_months,
        interest_rate=rate,
        total_deposit=total_deposit,
        interest_earned=maturity - total_deposit,
        maturity_amount=maturity
    )


class DPSManager:
    """
    Manages DPS creation, installment payments, maturity and closure
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
        self.logger = get_logger("bank_ledger.dps")

        self.dps_table = "dps_accounts"
        self.installments_table = "dps_installments"

    def calculate_maturity(self, monthly_installment: AmountInput, tenure_months: int,
                           annual_rate: Union[Decimal, str, int],
                           currency: Currency = Currency.USD) -> MaturityProjection:
        return calculate_maturity(monthly_installment, tenure_months, annual_rate, currency)

    def create_dps(
        self,
        customer_id: str,
        monthly_installment: AmountInput,
        tenure_months: int,
        interest_rate: Union[Decimal, str, int],
        branch_id: Optional[str] = None,
        linked_account: Optional[str] = None,
        start_date: Optional[date] = None,
        auto_debit: bool = False,
        currency: Currency = Currency.USD,
        context: Optional[CallerContext] = None
    ) -> Tuple[DPS, List[DPSInstallment]]:
        """
        Open a DPS and generate its installment schedule

        Args:
            customer_id: Depositor
            monthly_installment: Fixed monthly deposit
            tenure_months: Number of installments
            interest_rate: Annual rate in percent
            branch_id: Owning branch (defaults to the caller's branch)
            linked_account: Account used for auto-debit and settlement
            start_date: Defaults to today; installment k is due k months later
            auto_debit: Collect installments from the linked account
            currency: Used when no linked account is given
            context: Caller identity

        Returns:
            Tuple of (ACTIVE DPS, installments)

        Raises:
            ValidationFailed: If installment, tenure or rate are out of bounds
            NotFound: If the linked account does not exist
        """
        context = resolve_context(context)
        if not customer_id:
            raise ValidationFailed("Customer ID is required")

        if linked_account:
            account = self.account_manager.require_account(linked_account)
            if account.customer_id != customer_id:
                raise ValidationFailed(
                    f"Account {linked_account} does not belong to customer {customer_id}"
                )
            currency = account.currency
            branch_id = branch_id or account.branch_id
        elif auto_debit:
            raise ValidationFailed("Auto-debit requires a linked account")

        installment = parse_amount(monthly_installment, currency)
        rate = self._validate_terms(installment, tenure_months, interest_rate)
        projection = calculate_maturity(installment, tenure_months, rate, currency)

        start_date = start_date or date.today()
        now = datetime.now(timezone.utc)
        zero = Money.zero(currency)
        dps = DPS(
            id=self._generate_dps_number(),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            branch_id=branch_id or context.branch_id,
            currency=currency,
            monthly_installment=installment,
            tenure_months=tenure_months,
            interest_rate=rate,
            maturity_amount=projection.maturity_amount,
            total_deposited=zero,
            total_penalty=zero,
            start_date=start_date,
            maturity_date=add_months(start_date, tenure_months),
            linked_account_number=linked_account,
            installments_pending=tenure_months,
            auto_debit=auto_debit,
            next_payment_date=add_months(start_date, 1)
        )
        installments = [
            DPSInstallment(
                id=f"{dps.id}-{number:03d}",
                created_at=now,
                updated_at=now,
                dps_number=dps.id,
                installment_number=number,
                due_date=add_months(start_date, number),
                amount=installment,
                penalty=zero,
                total_paid=zero
            )
            for number in range(1, tenure_months + 1)
        ]

        with self.storage.atomic():
            self._save_dps(dps)
            for item in installments:
                self._save_installment(item)
            self.audit_trail.log_event(
                event_type=AuditEventType.DPS_CREATED,
                entity_type="dps",
                entity_id=dps.id,
                metadata={
                    "customer_id": customer_id,
                    "monthly_installment": str(installment.amount),
                    "tenure_months": tenure_months,
                    "interest_rate": str(rate),
                    "maturity_amount": str(dps.maturity_amount.amount),
                    "linked_account": linked_account
                },
                user_id=context.actor_id,
                correlation_id=context.correlation_id
            )

        self._log(context, "info", f"DPS {dps.id} created", "dps_created", dps.id,
                  {"maturity_amount": str(dps.maturity_amount.amount)})
        return dps, installments

    def pay_installment(
        self,
        dps_number: str,
        amount: AmountInput,
        mode: TransferMode = TransferMode.INTERNAL,
        payment_date: Optional[date] = None,
        from_account: Optional[str] = None,
        reference: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[Transaction, Optional[DPSInstallment]]:
        """
        Pay the earliest unpaid installment

        A payment after the due date plus grace days is charged the late
        penalty (flat fee plus rate times the installment) unless the
        missed-installment sweep already assessed one. The paying account is
        debited installment plus penalty; the penalty is booked as the
        transaction fee and only the installment counts as deposited.

        Returns:
            Tuple of (payment Transaction, PAID installment). Replaying a
            reference whose first attempt FAILED returns that FAILED
            transaction and None, since no installment was paid.

        Raises:
            ValidationFailed: If the amount differs from the monthly
                installment or no paying account is available
            InvalidState: If the DPS is not ACTIVE or fully paid
        """
        context = resolve_context(context)
        dps = self.require_dps(dps_number)
        paying_account = from_account or dps.linked_account_number
        if not paying_account:
            raise ValidationFailed(f"DPS {dps_number} has no linked account; from_account is required")
        self.account_manager.require_account(paying_account)
        money = parse_amount(amount, dps.currency)
        if money != dps.monthly_installment:
            raise ValidationFailed(
                f"Payment must equal the monthly installment {dps.monthly_installment.to_string()}"
            )
        payment_date = payment_date or date.today()

        with self.locks.acquire(
            LockKey.reference(reference) if reference else None,
            LockKey.dps(dps_number),
            LockKey.account(paying_account)
        ):
            if reference:
                prior = self._replayed(reference, dps_number, money)
                if prior:
                    return prior, self._installment_for_transaction(dps_number, prior.id)

            with self.storage.atomic():
                dps = self.require_dps(dps_number)
                if dps.status != DPSStatus.ACTIVE:
                    raise InvalidState(f"DPS {dps_number} is {dps.status.value}, not active")

                open_items = [i for i in self.get_installments(dps_number) if i.is_open]
                if not open_items:
                    raise InvalidState(f"DPS {dps_number} has no unpaid installments")
                installment = open_items[0]

                new_penalty = Money.zero(dps.currency)
                if installment.penalty.is_zero() and self._is_late(installment, payment_date):
                    new_penalty = self._penalty_for(installment)
                    installment.penalty = new_penalty

                transaction = self._post(lambda: self.ledger.post_debit(
                    paying_account, installment.amount,
                    transaction_type=TransactionType.PAYMENT,
                    mode=mode,
                    fee=installment.penalty,
                    description=f"DPS installment {installment.installment_number} {dps_number}",
                    reference=reference,
                    related_entity_type="dps",
                    related_entity_id=dps_number,
                    context=context
                ))

                installment.status = InstallmentStatus.PAID
                installment.payment_date = payment_date
                installment.total_paid = installment.amount + installment.penalty
                installment.transaction_id = transaction.id
                installment.receipt_number = transaction.receipt_number
                installment.payment_mode = mode
                installment.updated_at = datetime.now(timezone.utc)
                self._save_installment(installment)

                dps.total_deposited = dps.total_deposited + installment.amount
                dps.total_penalty = dps.total_penalty + new_penalty
                dps.installments_paid += 1
                dps.installments_pending -= 1
                dps.last_payment_date = payment_date
                dps.next_payment_date = open_items[1].due_date if len(open_items) > 1 else None
                dps.updated_at = datetime.now(timezone.utc)
                self._save_dps(dps)

                self.audit_trail.log_event(
                    event_type=AuditEventType.DPS_INSTALLMENT_PAID,
                    entity_type="dps",
                    entity_id=dps_number,
                    metadata={
                        "installment_number": installment.installment_number,
                        "amount": str(installment.amount.amount),
                        "penalty": str(installment.penalty.amount),
                        "total_deposited": str(dps.total_deposited.amount),
                        "transaction_id": transaction.id
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info",
                  f"DPS {dps_number} installment {installment.installment_number} paid",
                  "dps_installment_paid", dps_number,
                  {"amount": str(installment.amount.amount),
                   "penalty": str(installment.penalty.amount)})
        return transaction, installment

    def mature_dps(
        self,
        dps_number: str,
        as_of: Optional[date] = None,
        settlement_account: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Tuple[DPS, Transaction]:
        """
        Pay out the maturity amount of a fully paid DPS

        Raises:
            InvalidState: If the DPS is not ACTIVE, has unpaid installments
                or has not reached its maturity date
            ValidationFailed: If no settlement account is available
        """
        context = resolve_context(context)
        dps = self.require_dps(dps_number)
        account_number = self._settlement_account(dps, settlement_account)
        as_of = as_of or date.today()

        with self.locks.acquire(LockKey.dps(dps_number), LockKey.account(account_number)):
            with self.storage.atomic():
                dps = self.require_dps(dps_number)
                if dps.status != DPSStatus.ACTIVE:
                    raise InvalidState(f"DPS {dps_number} is {dps.status.value}, not active")
                if as_of < dps.maturity_date:
                    raise InvalidState(
                        f"DPS {dps_number} matures on {dps.maturity_date.isoformat()}"
                    )
                unpaid = [i for i in self.get_installments(dps_number)
                          if i.status != InstallmentStatus.PAID]
                if unpaid:
                    raise InvalidState(
                        f"DPS {dps_number} has {len(unpaid)} unpaid installments",
                        details={"unpaid": [i.installment_number for i in unpaid]}
                    )

                transaction = self._post(lambda: self.ledger.post_credit(
                    account_number, dps.maturity_amount,
                    transaction_type=TransactionType.DEPOSIT,
                    description=f"DPS maturity {dps_number}",
                    related_entity_type="dps",
                    related_entity_id=dps_number,
                    context=context
                ))

                dps.status = DPSStatus.MATURED
                dps.matured_date = as_of
                dps.settlement_amount = dps.maturity_amount
                dps.settlement_transaction_id = transaction.id
                dps.next_payment_date = None
                dps.updated_at = datetime.now(timezone.utc)
                self._save_dps(dps)

                self.audit_trail.log_event(
                    event_type=AuditEventType.DPS_MATURED,
                    entity_type="dps",
                    entity_id=dps_number,
                    metadata={
                        "maturity_amount": str(dps.maturity_amount.amount),
                        "total_deposited": str(dps.total_deposited.amount),
                        "account_number": account_number,
                        "transaction_id": transaction.id
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"DPS {dps_number} matured", "dps_matured", dps_number,
                  {"amount": str(dps.maturity_amount.amount)})
        return dps, transaction

    def close_dps(
        self,
        dps_number: str,
        closure_date: Optional[date] = None,
        settlement_account: Optional[str] = None,
        reason: str = "Premature closure",
        context: Optional[CallerContext] = None
    ) -> Tuple[DPS, Optional[Transaction]]:
        """
        Close a DPS before maturity

        Each paid installment earns interest at the DPS rate reduced by the
        configured premature-closure reduction, compounded monthly over the
        whole months it was held. Remaining installments are waived.

        Returns:
            Tuple of (CLOSED DPS, settlement Transaction or None when nothing
            was deposited)
        """
        context = resolve_context(context)
        dps = self.require_dps(dps_number)
        closure_date = closure_date or date.today()
        account_number = None
        if dps.total_deposited.is_positive():
            account_number = self._settlement_account(dps, settlement_account)

        with self.locks.acquire(
            LockKey.dps(dps_number),
            LockKey.account(account_number) if account_number else None
        ):
            with self.storage.atomic():
                dps = self.require_dps(dps_number)
                if dps.status not in CLOSABLE_STATUSES:
                    raise InvalidState(f"DPS {dps_number} is {dps.status.value} and cannot be closed")

                installments = self.get_installments(dps_number)
                settlement = self.premature_settlement(dps, installments, closure_date)

                transaction = None
                if settlement.is_positive():
                    if account_number is None:
                        raise InvalidState(f"DPS {dps_number} changed while closing; retry")
                    transaction = self._post(lambda: self.ledger.post_credit(
                        account_number, settlement,
                        transaction_type=TransactionType.DEPOSIT,
                        description=f"DPS premature closure {dps_number}",
                        related_entity_type="dps",
                        related_entity_id=dps_number,
                        context=context
                    ))

                for installment in installments:
                    if installment.is_open:
                        installment.status = InstallmentStatus.WAIVED
                        installment.updated_at = datetime.now(timezone.utc)
                        self._save_installment(installment)

                dps.status = DPSStatus.CLOSED
                dps.closed_date = closure_date
                dps.installments_pending = 0
                dps.next_payment_date = None
                dps.auto_debit = False
                dps.settlement_amount = settlement
                dps.settlement_transaction_id = transaction.id if transaction else None
                dps.remarks = reason
                dps.updated_at = datetime.now(timezone.utc)
                self._save_dps(dps)

                self.audit_trail.log_event(
                    event_type=AuditEventType.DPS_CLOSED,
                    entity_type="dps",
                    entity_id=dps_number,
                    metadata={
                        "reason": reason,
                        "settlement_amount": str(settlement.amount),
                        "total_deposited": str(dps.total_deposited.amount),
                        "transaction_id": transaction.id if transaction else None
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"DPS {dps_number} closed", "dps_closed", dps_number,
                  {"settlement": str(settlement.amount), "reason": reason})
        return dps, transaction

    def premature_settlement(self, dps: DPS, installments: List[DPSInstallment],
                             closure_date: date) -> Money:
        """Deposits plus reduced-rate interest for each paid installment"""
        reduced = max(
            dps.interest_rate - Decimal(self.config.dps_premature_rate_reduction), Decimal('0')
        )
        growth = Decimal('1') + monthly_rate(reduced)
        total = Decimal('0')
        for installment in installments:
            if installment.status != InstallmentStatus.PAID:
                continue
            held = months_between(installment.payment_date or installment.due_date, closure_date)
            total += installment.amount.amount * growth ** held
        return Money(round_money(total), dps.currency)

    def suspend_dps(self, dps_number: str, reason: str,
                    context: Optional[CallerContext] = None) -> DPS:
        """ACTIVE -> SUSPENDED; installments are not collected while suspended"""
        return self._change_status(dps_number, DPSStatus.ACTIVE, DPSStatus.SUSPENDED,
                                   AuditEventType.DPS_SUSPENDED, reason, context)

    def resume_dps(self, dps_number: str, reason: str = "",
                   context: Optional[CallerContext] = None) -> DPS:
        return self._change_status(dps_number, DPSStatus.SUSPENDED, DPSStatus.ACTIVE,
                                   AuditEventType.DPS_RESUMED, reason, context)

    def _change_status(self, dps_number: str, expected: DPSStatus, new_status: DPSStatus,
                       event_type: AuditEventType, reason: str,
                       context: Optional[CallerContext]) -> DPS:
        context = resolve_context(context)
        self.require_dps(dps_number)

        with self.locks.acquire(LockKey.dps(dps_number)):
            with self.storage.atomic():
                dps = self.require_dps(dps_number)
                if dps.status != expected:
                    raise InvalidState(
                        f"DPS {dps_number} is {dps.status.value}, expected {expected.value}"
                    )
                old_status = dps.status
                dps.status = new_status
                dps.remarks = reason or dps.remarks
                dps.updated_at = datetime.now(timezone.utc)
                self._save_dps(dps)
                self.audit_trail.log_event(
                    event_type=event_type,
                    entity_type="dps",
                    entity_id=dps_number,
                    metadata={"old_status": old_status.value, "new_status": new_status.value,
                              "reason": reason},
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        self._log(context, "info", f"DPS {dps_number} {new_status.value}",
                  f"dps_{new_status.value}", dps_number, {"reason": reason})
        return dps

    # Sweeps

    def process_missed_installments(self, as_of: Optional[date] = None,
                                    context: Optional[CallerContext] = None) -> Dict[str, int]:
        """
        Mark installments unpaid past their grace period as missed

        Each newly missed installment is assessed the late penalty. A DPS
        whose missed count exceeds the configured threshold is DEFAULTED and
        auto-debit is switched off.

        Returns:
            Counts of DPS scanned, installments missed, DPS defaulted and
            DPS that could not be processed
        """
        context = resolve_context(context)
        as_of = as_of or date.today()
        threshold = self.config.dps_missed_installment_threshold
        results = {"dps_scanned": 0, "installments_missed": 0, "dps_defaulted": 0, "errors": 0}

        for dps in self.list_dps(DPSStatus.ACTIVE):
            results["dps_scanned"] += 1
            try:
                with self.locks.acquire(LockKey.dps(dps.id)):
                    with self.storage.atomic():
                        current = self.require_dps(dps.id)
                        if current.status != DPSStatus.ACTIVE:
                            continue

                        missed = []
                        for installment in self.get_installments(dps.id):
                            if installment.status != InstallmentStatus.PENDING or \
                                    not self._is_late(installment, as_of):
                                continue
                            installment.status = InstallmentStatus.OVERDUE
                            if installment.penalty.is_zero():
                                installment.penalty = self._penalty_for(installment)
                                current.total_penalty = current.total_penalty + installment.penalty
                            installment.updated_at = datetime.now(timezone.utc)
                            self._save_installment(installment)
                            missed.append(installment.installment_number)

                        if not missed:
                            continue

                        current.installments_missed += len(missed)
                        current.updated_at = datetime.now(timezone.utc)
                        results["installments_missed"] += len(missed)
                        self.audit_trail.log_event(
                            event_type=AuditEventType.DPS_INSTALLMENT_MISSED,
                            entity_type="dps",
                            entity_id=dps.id,
                            metadata={"installments": missed,
                                      "installments_missed": current.installments_missed},
                            user_id=context.actor_id,
                            correlation_id=context.correlation_id
                        )

                        if current.installments_missed > threshold:
                            current.status = DPSStatus.DEFAULTED
                            current.auto_debit = False
                            current.remarks = (
                                f"Defaulted on {as_of.isoformat()}: "
                                f"{current.installments_missed} installments missed"
                            )
                            results["dps_defaulted"] += 1
                            self.audit_trail.log_event(
                                event_type=AuditEventType.DPS_DEFAULTED,
                                entity_type="dps",
                                entity_id=dps.id,
                                metadata={"installments_missed": current.installments_missed},
                                user_id=context.actor_id,
                                correlation_id=context.correlation_id
                            )
                        self._save_dps(current)
            except Exception as e:
                results["errors"] += 1
                self._log(context, "error", f"Missed installment processing failed for {dps.id}",
                          "dps_missed_sweep_failed", dps.id, {"error": str(e)})

        self.audit_trail.log_event(
            event_type=AuditEventType.SWEEP_COMPLETED,
            entity_type="dps",
            entity_id="process_missed_installments",
            metadata=dict(results, as_of=as_of.isoformat()),
            user_id=context.actor_id,
            correlation_id=context.correlation_id
        )
        self._log(context, "info", "DPS missed installment sweep completed",
                  "dps_missed_sweep", "dps", results)
        return results

    def run_auto_debits(self, as_of: Optional[date] = None,
                        context: Optional[CallerContext] = None) -> Dict[str, int]:
        """
        Collect every due installment of auto-debit DPS from the linked account

        Insufficient funds stop collection for that DPS and are counted, not
        raised.
        """
        context = resolve_context(context)
        as_of = as_of or date.today()
        results = {"dps_scanned": 0, "installments_collected": 0,
                   "insufficient_balance": 0, "errors": 0}

        for dps in self.list_dps(DPSStatus.ACTIVE):
            if not dps.auto_debit or not dps.linked_account_number:
                continue
            results["dps_scanned"] += 1
            due = [i for i in self.get_installments(dps.id) if i.is_open and i.due_date <= as_of]
            for _ in due:
                try:
                    self.pay_installment(dps.id, dps.monthly_installment,
                                         mode=TransferMode.INTERNAL, payment_date=as_of,
                                         context=context)
                    results["installments_collected"] += 1
                except InsufficientBalance as e:
                    results["insufficient_balance"] += 1
                    self._log(context, "warning", f"Auto-debit for DPS {dps.id} skipped",
                              "dps_auto_debit_skipped", dps.id, {"error": str(e)})
                    break
                except Exception as e:
                    results["errors"] += 1
                    self._log(context, "error", f"Auto-debit for DPS {dps.id} failed",
                              "dps_auto_debit_failed", dps.id, {"error": str(e)})
                    break

        self._log(context, "info", "DPS auto-debit run completed", "dps_auto_debit",
                  "dps", results)
        return results

    # Queries

    def get_dps(self, dps_number: str) -> Optional[DPS]:
        data = self.storage.load(self.dps_table, dps_number)
        if data:
            return self._dps_from_dict(data)
        return None

    def require_dps(self, dps_number: str) -> DPS:
        dps = self.get_dps(dps_number)
        if dps is None:
            raise NotFound(f"DPS {dps_number} not found", details={"dps_number": dps_number})
        return dps

    def get_customer_dps(self, customer_id: str) -> List[DPS]:
        data = self.storage.find(self.dps_table, {"customer_id": customer_id})
        return [self._dps_from_dict(d) for d in data]

    def list_dps(self, status: Optional[DPSStatus] = None) -> List[DPS]:
        if status:
            data = self.storage.find(self.dps_table, {"status": status.value})
        else:
            data = self.storage.load_all(self.dps_table)
        return [self._dps_from_dict(d) for d in data]

    def get_installments(self, dps_number: str) -> List[DPSInstallment]:
        """Installments ordered by number"""
        data = self.storage.find(self.installments_table, {"dps_number": dps_number})
        installments = [self._installment_from_dict(d) for d in data]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    # Internals

    def _validate_terms(self, installment: Money, tenure_months: int,
                        interest_rate: Union[Decimal, str, int]) -> Decimal:
        if isinstance(interest_rate, float):
            raise ValidationFailed("Interest rate must be Decimal, int or str, never float")
        rate = Decimal(str(interest_rate))
        cfg = self.config

        if installment.amount < Decimal(cfg.dps_min_installment):
            raise ValidationFailed(f"Monthly installment must be at least {cfg.dps_min_installment}")
        if not isinstance(tenure_months, int) or \
                not (cfg.dps_min_tenure_months <= tenure_months <= cfg.dps_max_tenure_months):
            raise ValidationFailed(
                f"Tenure must be between {cfg.dps_min_tenure_months} and "
                f"{cfg.dps_max_tenure_months} months"
            )
        if not (Decimal('0') <= rate <= Decimal(cfg.dps_max_interest_rate)):
            raise ValidationFailed(
                f"Interest rate must be between 0 and {cfg.dps_max_interest_rate} percent"
            )
        return rate

    def _is_late(self, installment: DPSInstallment, as_of: date) -> bool:
        return as_of > installment.due_date + timedelta(days=self.config.dps_grace_days)

    def _penalty_for(self, installment: DPSInstallment) -> Money:
        """Flat late fee plus a percentage of the installment"""
        fee = Decimal(self.config.dps_late_fee)
        rate = Decimal(self.config.dps_late_penalty_rate)
        return Money(
            round_money(fee + installment.amount.amount * rate / Decimal('100')),
            installment.amount.currency
        )

    def _settlement_account(self, dps: DPS, settlement_account: Optional[str]) -> str:
        account_number = settlement_account or dps.linked_account_number
        if not account_number:
            raise ValidationFailed(
                f"DPS {dps.id} has no linked account; a settlement account is required"
            )
        self.account_manager.require_account(account_number)
        return account_number

    def _post(self, posting: Callable[[], Transaction]) -> Transaction:
        try:
            return posting()
        except InsufficientBalance:
            raise
        except BankingError as error:
            raise ExternalPostingFailed(
                f"Ledger posting failed: {error.message}",
                details={"cause": error.kind}
            ) from error

    def _replayed(self, reference: str, dps_number: str, amount: Money) -> Optional[Transaction]:
        prior = self.ledger.find_by_reference(reference)
        if prior is None:
            return None
        if prior.related_entity_id != dps_number or prior.amount != amount:
            raise ValidationFailed(
                f"Reference {reference} was already used for a different request"
            )
        return prior

    def _installment_for_transaction(self, dps_number: str,
                                     transaction_id: str) -> Optional[DPSInstallment]:
        for installment in self.get_installments(dps_number):
            if installment.transaction_id == transaction_id:
                return installment
        return None

    def _generate_dps_number(self) -> str:
        return f"DPS{uuid.uuid4().int % 10**12:012d}"

    def _log(self, context: CallerContext, level: str, message: str, action: str,
             resource: str, extra: Optional[dict] = None) -> None:
        log_action(self.logger, level, message, user_id=context.actor_id, action=action,
                   resource=resource, correlation_id=context.correlation_id,
                   branch_id=context.branch_id, extra=extra)

    # Serialization

    def _save_dps(self, dps: DPS) -> None:
        self.storage.save(self.dps_table, dps.id, self._dps_to_dict(dps))

    def _save_installment(self, installment: DPSInstallment) -> None:
        self.storage.save(self.installments_table, installment.id,
                          self._installment_to_dict(installment))

    def _dps_to_dict(self, dps: DPS) -> Dict:
        result = dps.to_dict()
        result['currency'] = dps.currency.code
        result['interest_rate'] = str(dps.interest_rate)
        result['status'] = dps.status.value

        for field_name in ['monthly_installment', 'maturity_amount', 'total_deposited',
                           'total_penalty', 'settlement_amount']:
            value = getattr(dps, field_name)
            result[field_name] = str(value.amount) if value is not None else None

        for field_name in ['start_date', 'maturity_date', 'next_payment_date',
                           'last_payment_date', 'matured_date', 'closed_date']:
            value = getattr(dps, field_name)
            result[field_name] = value.isoformat() if value else None

        return result

    def _dps_from_dict(self, data: Dict) -> DPS:
        currency = Currency[data['currency']]

        def get_money(field_name: str) -> Optional[Money]:
            if data.get(field_name) is None:
                return None
            return Money(Decimal(data[field_name]), currency)

        def get_date(field_name: str) -> Optional[date]:
            if data.get(field_name):
                return date.fromisoformat(data[field_name])
            return None

        return DPS(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            branch_id=data.get('branch_id'),
            currency=currency,
            monthly_installment=get_money('monthly_installment'),
            tenure_months=data['tenure_months'],
            interest_rate=Decimal(data['interest_rate']),
            maturity_amount=get_money('maturity_amount'),
            total_deposited=get_money('total_deposited'),
            total_penalty=get_money('total_penalty'),
            start_date=get_date('start_date'),
            maturity_date=get_date('maturity_date'),
            linked_account_number=data.get('linked_account_number'),
            installments_paid=data.get('installments_paid', 0),
            installments_pending=data.get('installments_pending', 0),
            installments_missed=data.get('installments_missed', 0),
            status=DPSStatus(data['status']),
            auto_debit=data.get('auto_debit', False),
            next_payment_date=get_date('next_payment_date'),
            last_payment_date=get_date('last_payment_date'),
            matured_date=get_date('matured_date'),
            closed_date=get_date('closed_date'),
            settlement_amount=get_money('settlement_amount'),
            settlement_transaction_id=data.get('settlement_transaction_id'),
            remarks=data.get('remarks')
        )

    def _installment_to_dict(self, installment: DPSInstallment) -> Dict:
        result = installment.to_dict()
        result['currency'] = installment.amount.currency.code
        result['status'] = installment.status.value
        result['payment_mode'] = installment.payment_mode.value if installment.payment_mode else None
        result['due_date'] = installment.due_date.isoformat()
        result['payment_date'] = installment.payment_date.isoformat() \
            if installment.payment_date else None
        for field_name in ['amount', 'penalty', 'total_paid']:
            result[field_name] = str(getattr(installment, field_name).amount)
        return result

    def _installment_from_dict(self, data: Dict) -> DPSInstallment:
        currency = Currency[data['currency']]
        return DPSInstallment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            dps_number=data['dps_number'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Money(Decimal(data['amount']), currency),
            penalty=Money(Decimal(data['penalty']), currency),
            total_paid=Money(Decimal(data['total_paid']), currency),
            status=InstallmentStatus(data['status']),
            payment_date=date.fromisoformat(data['payment_date']) if data.get('payment_date') else None,
            transaction_id=data.get('transaction_id'),
            receipt_number=data.get('receipt_number'),
            payment_mode=TransferMode(data['payment_mode']) if data.get('payment_mode') else None
        )
