"""
Ledger Engine Module

Atomic balance mutation: transfer, deposit, withdrawal and balance queries,
plus the debit/credit posting primitives that the loan and DPS engines use
inside their own units of work.

Every mutation runs under the account locks (acquired in the global lock
order) and inside one storage unit of work, so the balance changes and the
transaction record commit together or not at all.
"""

from datetime import datetime, timezone, date
from typing import List, Optional, Union
from decimal import Decimal

from .money import Money, parse_amount
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, Account
from .locks import LockManager, LockKey
from .config import LedgerConfig, get_config
from .context import CallerContext, resolve_context
from .errors import (
    AccountInactive, DuplicateOperation, InsufficientBalance, InvalidState,
    NotFound, ValidationFailed
)
from .transactions import (
    FeeSchedule, Transaction, TransactionStatus, TransactionStore, TransactionType,
    TransferMode, TransferPriority, generate_receipt_number, new_transaction
)
from .logging_config import get_logger, log_action


AmountInput = Union[Money, Decimal, int, str]


class LedgerEngine:
    """
    Moves money between accounts under per-account locks
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail,
        locks: Optional[LockManager] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.locks = locks or account_manager.locks
        self.config = config or get_config()
        self.transactions = TransactionStore(storage)
        self.fee_schedule = FeeSchedule(self.config)
        self.logger = get_logger("bank_ledger.ledger")

    # Queries

    def balance(self, account_number: str) -> Money:
        """Current committed balance of an account"""
        return self.account_manager.require_account(account_number).balance

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.transactions.get(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found",
                           details={"transaction_id": transaction_id})
        return transaction

    def find_by_reference(self, reference_number: str) -> Optional[Transaction]:
        return self.transactions.find_by_reference(reference_number)

    def get_account_transactions(
        self,
        account_number: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[TransactionStatus] = None
    ) -> List[Transaction]:
        """
        Transactions touching an account, oldest first

        Args:
            account_number: Account to query
            start_date: First day included (inclusive)
            end_date: Last day included (inclusive)
            status: Only return transactions in this status
        """
        self.account_manager.require_account(account_number)
        result = []
        for transaction in self.transactions.for_account(account_number):
            day = (transaction.completed_at or transaction.created_at).date()
            if start_date and day < start_date:
                continue
            if end_date and day > end_date:
                continue
            if status and transaction.status != status:
                continue
            result.append(transaction)
        return result

    # Customer-facing operations

    def deposit(
        self,
        account_number: str,
        amount: AmountInput,
        mode: TransferMode = TransferMode.CASH,
        reference: Optional[str] = None,
        description: str = "Deposit",
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Credit an account

        Returns:
            The COMPLETED transaction, or the prior transaction when the
            reference number was already used for the same request
        """
        context = resolve_context(context)
        account = self.account_manager.require_account(account_number)
        money = parse_amount(amount, account.currency)

        transaction = new_transaction(
            TransactionType.DEPOSIT, money, mode, TransactionStatus.PROCESSING,
            to_account_number=account_number,
            reference_number=reference,
            description=description,
            requires_approval=self._requires_approval(money),
            initiated_by=context.actor_id,
            branch_id=context.branch_id
        )
        return self._execute(transaction, reference is not None, context)

    def withdraw(
        self,
        account_number: str,
        amount: AmountInput,
        mode: TransferMode = TransferMode.CASH,
        reference: Optional[str] = None,
        description: str = "Withdrawal",
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Debit an account

        Raises:
            AccountInactive: If the account is not ACTIVE
            InsufficientBalance: If the balance would go below zero
        """
        context = resolve_context(context)
        account = self.account_manager.require_account(account_number)
        money = parse_amount(amount, account.currency)

        transaction = new_transaction(
            TransactionType.WITHDRAWAL, money, mode, TransactionStatus.PROCESSING,
            from_account_number=account_number,
            reference_number=reference,
            description=description,
            requires_approval=self._requires_approval(money),
            initiated_by=context.actor_id,
            branch_id=context.branch_id
        )
        return self._execute(transaction, reference is not None, context)

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: AmountInput,
        mode: TransferMode = TransferMode.NEFT,
        reference: Optional[str] = None,
        priority: TransferPriority = TransferPriority.NORMAL,
        description: str = "Fund transfer",
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Move money between two accounts

        The source is debited amount + fee + tax and the destination is
        credited amount, both in one unit of work. If either leg cannot be
        applied no balance changes, a FAILED transaction is recorded and the
        error is raised with the record attached as ``error.transaction``.

        Args:
            from_account: Source account number
            to_account: Destination account number
            amount: Positive amount with at most two fractional digits
            mode: Transfer channel, drives the fee
            reference: Caller idempotency key
            priority: HIGH priority pays the high-priority fee
            description: Free text shown on statements
            context: Caller identity

        Returns:
            COMPLETED Transaction (or the prior one for a replayed reference)
        """
        context = resolve_context(context)
        transaction = self._build_transfer(
            from_account, to_account, amount, mode, reference, priority,
            description, TransactionStatus.PROCESSING, context
        )
        return self._execute(transaction, reference is not None, context)

    def submit_transfer(
        self,
        from_account: str,
        to_account: str,
        amount: AmountInput,
        mode: TransferMode = TransferMode.NEFT,
        reference: Optional[str] = None,
        priority: TransferPriority = TransferPriority.NORMAL,
        description: str = "Fund transfer",
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Record a PENDING transfer that moves no money until approved

        Used for high-value transfers that need a second approval.
        """
        context = resolve_context(context)
        transaction = self._build_transfer(
            from_account, to_account, amount, mode, reference, priority,
            description, TransactionStatus.PENDING, context
        )

        keys = [LockKey.reference(reference)] if reference else []
        with self.locks.acquire(*keys):
            if reference:
                try:
                    self._check_reference(transaction)
                except DuplicateOperation as duplicate:
                    return duplicate.prior_transaction

            self.transactions.save(transaction)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_PENDING,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata=self._audit_metadata(transaction),
                user_id=context.actor_id,
                correlation_id=context.correlation_id
            )

        log_action(
            self.logger, "info", f"Transfer {transaction.id} submitted for approval",
            user_id=context.actor_id, action="transaction_pending",
            resource=transaction.id, correlation_id=context.correlation_id,
            extra={"amount": str(transaction.amount.amount)}
        )
        return transaction

    def approve_pending_transfer(
        self,
        transaction_id: str,
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """Apply a PENDING transfer; it completes or is recorded FAILED"""
        context = resolve_context(context)
        transaction = self.get_transaction(transaction_id)

        with self.locks.acquire(
            LockKey.reference(transaction.reference_number),
            LockKey.account(transaction.from_account_number),
            LockKey.account(transaction.to_account_number)
        ):
            transaction = self.get_transaction(transaction_id)
            if transaction.status != TransactionStatus.PENDING:
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status.value}, not pending"
                )

            transaction.status = TransactionStatus.PROCESSING
            try:
                with self.storage.atomic():
                    self._apply(transaction, context)
            except Exception as error:
                self._record_failure(transaction, error, context)
                raise

        self._log_completed(transaction, context)
        return transaction

    def cancel_transaction(
        self,
        transaction_id: str,
        reason: str,
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Cancel a PENDING or PROCESSING transaction

        Raises:
            InvalidState: If the transaction already reached a terminal status
        """
        context = resolve_context(context)
        transaction = self.get_transaction(transaction_id)

        with self.locks.acquire(LockKey.reference(transaction.reference_number)):
            transaction = self.get_transaction(transaction_id)
            if transaction.is_terminal:
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status.value}; "
                    "only pending or processing transactions can be cancelled"
                )

            now = datetime.now(timezone.utc)
            transaction.status = TransactionStatus.CANCELLED
            transaction.cancelled_at = now
            transaction.updated_at = now
            transaction.remarks = reason
            self.transactions.save(transaction)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CANCELLED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"reason": reason},
                user_id=context.actor_id,
                correlation_id=context.correlation_id
            )

        log_action(
            self.logger, "info", f"Transaction {transaction_id} cancelled",
            user_id=context.actor_id, action="transaction_cancelled",
            resource=transaction_id, correlation_id=context.correlation_id,
            extra={"reason": reason}
        )
        return transaction

    # Posting primitives for the loan and DPS engines

    def post_debit(
        self,
        account_number: str,
        amount: Money,
        transaction_type: TransactionType = TransactionType.PAYMENT,
        mode: TransferMode = TransferMode.INTERNAL,
        fee: Optional[Money] = None,
        description: str = "",
        reference: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """
        Debit amount + fee from an account inside the caller's unit of work

        The caller must already hold the account lock. On failure a FAILED
        transaction is written out of band and the ledger error propagates.
        """
        context = resolve_context(context)
        self._require_lock(account_number)
        transaction = new_transaction(
            transaction_type, amount, mode, TransactionStatus.PROCESSING,
            from_account_number=account_number,
            fee=fee,
            reference_number=reference,
            description=description,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            initiated_by=context.actor_id,
            branch_id=context.branch_id
        )
        return self._post(transaction, context)

    def post_credit(
        self,
        account_number: str,
        amount: Money,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        mode: TransferMode = TransferMode.INTERNAL,
        description: str = "",
        reference: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        context: Optional[CallerContext] = None
    ) -> Transaction:
        """Credit an account inside the caller's unit of work (lock must be held)"""
        context = resolve_context(context)
        self._require_lock(account_number)
        transaction = new_transaction(
            transaction_type, amount, mode, TransactionStatus.PROCESSING,
            to_account_number=account_number,
            reference_number=reference,
            description=description,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            initiated_by=context.actor_id,
            branch_id=context.branch_id
        )
        return self._post(transaction, context)

    # Internals

    def _build_transfer(self, from_account: str, to_account: str, amount: AmountInput,
                        mode: TransferMode, reference: Optional[str],
                        priority: TransferPriority, description: str,
                        status: TransactionStatus, context: CallerContext) -> Transaction:
        if from_account == to_account:
            raise ValidationFailed("Source and destination accounts must differ")

        source = self.account_manager.require_account(from_account)
        destination = self.account_manager.require_account(to_account)
        if source.currency != destination.currency:
            raise ValidationFailed(
                f"Cannot transfer {source.currency.code} to a {destination.currency.code} account"
            )

        money = parse_amount(amount, source.currency)
        fee, tax = self.fee_schedule.calculate(
            mode, priority, source.customer_id == destination.customer_id, source.currency
        )

        return new_transaction(
            TransactionType.TRANSFER, money, mode, status,
            from_account_number=from_account,
            to_account_number=to_account,
            fee=fee,
            tax=tax,
            reference_number=reference,
            priority=priority,
            description=description,
            requires_approval=self._requires_approval(money),
            initiated_by=context.actor_id,
            branch_id=context.branch_id
        )

    def _execute(self, transaction: Transaction, caller_reference: bool,
                 context: CallerContext) -> Transaction:
        keys = [
            LockKey.account(number)
            for number in (transaction.from_account_number, transaction.to_account_number)
            if number
        ]
        if caller_reference:
            keys.append(LockKey.reference(transaction.reference_number))

        with self.locks.acquire(*keys):
            if caller_reference:
                try:
                    self._check_reference(transaction)
                except DuplicateOperation as duplicate:
                    log_action(
                        self.logger, "info",
                        f"Replayed reference {transaction.reference_number}",
                        user_id=context.actor_id, action="transaction_replayed",
                        resource=duplicate.prior_transaction.id,
                        correlation_id=context.correlation_id
                    )
                    return duplicate.prior_transaction

            try:
                with self.storage.atomic():
                    self._apply(transaction, context)
            except Exception as error:
                self._record_failure(transaction, error, context)
                raise

        self._log_completed(transaction, context)
        return transaction

    def _post(self, transaction: Transaction, context: CallerContext) -> Transaction:
        try:
            with self.storage.atomic():
                self._apply(transaction, context)
        except Exception as error:
            self._record_failure(transaction, error, context)
            raise

        self.storage.on_commit(lambda: self._log_completed(transaction, context))
        return transaction

    def _check_reference(self, transaction: Transaction) -> None:
        prior = self.transactions.find_by_reference(transaction.reference_number)
        if prior is None:
            return
        if not prior.same_request(transaction.transaction_type, transaction.from_account_number,
                                  transaction.to_account_number, transaction.amount):
            raise ValidationFailed(
                f"Reference {transaction.reference_number} was already used for a different request",
                details={"prior_transaction_id": prior.id}
            )
        raise DuplicateOperation(
            f"Reference {transaction.reference_number} already processed",
            prior_transaction=prior
        )

    def _apply(self, transaction: Transaction, context: CallerContext) -> None:
        """
        Apply both legs; every check runs before the first mutation

        Must be called with the account locks held and inside a unit of work.
        """
        debit_account = self._load_for_posting(transaction.from_account_number, transaction)
        credit_account = self._load_for_posting(transaction.to_account_number, transaction)

        if debit_account and debit_account.balance < transaction.total_amount:
            raise InsufficientBalance(
                f"Account {debit_account.account_number} has {debit_account.balance.to_string()}, "
                f"needs {transaction.total_amount.to_string()}",
                details={
                    "account_number": debit_account.account_number,
                    "available": str(debit_account.balance.amount),
                    "required": str(transaction.total_amount.amount)
                }
            )

        now = datetime.now(timezone.utc)

        if debit_account:
            transaction.balance_before = debit_account.balance
            debit_account.balance = debit_account.balance - transaction.total_amount
            transaction.balance_after = debit_account.balance
            self._touch(debit_account, now)

        if credit_account:
            before = credit_account.balance
            credit_account.balance = credit_account.balance + transaction.amount
            if debit_account:
                transaction.counterparty_balance_before = before
                transaction.counterparty_balance_after = credit_account.balance
            else:
                transaction.balance_before = before
                transaction.balance_after = credit_account.balance
            self._touch(credit_account, now)

        transaction.status = TransactionStatus.COMPLETED
        transaction.completed_at = now
        transaction.updated_at = now
        transaction.receipt_number = generate_receipt_number()
        self.transactions.save(transaction)

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_COMPLETED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata=self._audit_metadata(transaction),
            user_id=context.actor_id,
            correlation_id=context.correlation_id
        )

    def _load_for_posting(self, account_number: Optional[str],
                          transaction: Transaction) -> Optional[Account]:
        if not account_number:
            return None
        account = self.account_manager.require_account(account_number)
        if not account.is_active:
            raise AccountInactive(
                f"Account {account_number} is {account.status.value}",
                details={"account_number": account_number, "status": account.status.value}
            )
        if account.currency != transaction.currency:
            raise ValidationFailed(
                f"Account {account_number} is in {account.currency.code}, "
                f"transaction is in {transaction.currency.code}"
            )
        return account

    def _touch(self, account: Account, now: datetime) -> None:
        account.last_transaction_at = now
        account.updated_at = now
        self.account_manager.save_account(account)

    def _record_failure(self, transaction: Transaction, error: Exception,
                        context: CallerContext) -> None:
        """Persist the attempt as FAILED outside the rolled-back unit of work"""
        now = datetime.now(timezone.utc)
        transaction.status = TransactionStatus.FAILED
        transaction.error_code = getattr(error, 'kind', 'INTERNAL_ERROR')
        transaction.error_message = str(error)
        transaction.balance_before = None
        transaction.balance_after = None
        transaction.counterparty_balance_before = None
        transaction.counterparty_balance_after = None
        transaction.receipt_number = None
        transaction.completed_at = now
        transaction.updated_at = now
        self.transactions.save_out_of_band(transaction)

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_FAILED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata=dict(self._audit_metadata(transaction), error_code=transaction.error_code),
            user_id=context.actor_id,
            correlation_id=context.correlation_id,
            out_of_band=True
        )
        log_action(
            self.logger, "warning",
            f"Transaction {transaction.id} failed: {transaction.error_message}",
            user_id=context.actor_id, action="transaction_failed",
            resource=transaction.id, correlation_id=context.correlation_id,
            extra={"error_code": transaction.error_code,
                   "amount": str(transaction.amount.amount)}
        )
        error.transaction = transaction

    def _log_completed(self, transaction: Transaction, context: CallerContext) -> None:
        log_action(
            self.logger, "info",
            f"{transaction.transaction_type.value.title()} {transaction.id} completed",
            user_id=context.actor_id, action="transaction_completed",
            resource=transaction.id, correlation_id=context.correlation_id,
            branch_id=context.branch_id,
            extra={
                "amount": str(transaction.amount.amount),
                "fee": str(transaction.fee.amount),
                "tax": str(transaction.tax.amount),
                "from": transaction.from_account_number,
                "to": transaction.to_account_number
            }
        )

    def _require_lock(self, account_number: str) -> None:
        if not self.locks.is_held(LockKey.account(account_number)):
            raise RuntimeError(f"Posting to {account_number} requires its account lock")

    def _requires_approval(self, amount: Money) -> bool:
        return amount.amount > Decimal(self.config.high_value_threshold)

    def _audit_metadata(self, transaction: Transaction) -> dict:
        return {
            "reference_number": transaction.reference_number,
            "transaction_type": transaction.transaction_type.value,
            "amount": str(transaction.amount.amount),
            "fee": str(transaction.fee.amount),
            "tax": str(transaction.tax.amount),
            "from_account": transaction.from_account_number,
            "to_account": transaction.to_account_number,
            "related_entity_id": transaction.related_entity_id
        }
