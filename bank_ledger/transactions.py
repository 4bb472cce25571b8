"""
Transaction Records Module

Immutable transaction records written by the ledger engine, the transfer
fee and service tax schedule, and the transaction store with reference
number lookup for idempotent retries.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .money import Money, Currency, round_money
from .storage import StorageInterface, StorageRecord
from .config import LedgerConfig


class TransactionType(Enum):
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(Enum):
    """Transaction lifecycle; COMPLETED, FAILED and CANCELLED are terminal"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferMode(Enum):
    NEFT = "neft"
    RTGS = "rtgs"
    IMPS = "imps"
    UPI = "upi"
    CASH = "cash"
    CHEQUE = "cheque"
    CARD = "card"
    INTERNAL = "internal"


class TransferPriority(Enum):
    NORMAL = "normal"
    HIGH = "high"


TERMINAL_STATUSES = {
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
}


def generate_transaction_id() -> str:
    return f"TXN{uuid.uuid4().hex[:16].upper()}"


def generate_reference_number() -> str:
    return f"REF{uuid.uuid4().hex[:16].upper()}"


def generate_receipt_number() -> str:
    return f"RCP{uuid.uuid4().hex[:12].upper()}"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable record of one financial operation attempt.

    balance_before/balance_after snapshot the debited account (or the
    credited account for deposits); the counterparty snapshots cover the
    credited side of a transfer.
    """
    reference_number: str
    transaction_type: TransactionType
    currency: Currency
    amount: Money
    fee: Money
    tax: Money
    total_amount: Money
    mode: TransferMode
    status: TransactionStatus
    from_account_number: Optional[str] = None
    to_account_number: Optional[str] = None
    priority: TransferPriority = TransferPriority.NORMAL
    balance_before: Optional[Money] = None
    balance_after: Optional[Money] = None
    counterparty_balance_before: Optional[Money] = None
    counterparty_balance_after: Optional[Money] = None
    requires_approval: bool = False
    description: str = ""
    receipt_number: Optional[str] = None
    related_entity_type: Optional[str] = None  # loan or dps
    related_entity_id: Optional[str] = None
    initiated_by: Optional[str] = None
    branch_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    remarks: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def transaction_id(self) -> str:
        return self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def debits(self, account_number: str) -> bool:
        return self.from_account_number == account_number

    def credits(self, account_number: str) -> bool:
        return self.to_account_number == account_number

    def same_request(self, transaction_type: TransactionType, from_account: Optional[str],
                     to_account: Optional[str], amount: Money) -> bool:
        """Whether a replayed request carries the same parameters"""
        return (
            self.transaction_type == transaction_type and
            self.from_account_number == from_account and
            self.to_account_number == to_account and
            self.amount == amount
        )


class FeeSchedule:
    """
    Transfer fee and service tax rules

    High priority transfers pay the high-priority fee; transfers between two
    accounts of the same customer are free when configured; everything else
    pays the per-mode fee. Tax is a flat rate on the fee.
    """

    def __init__(self, config: LedgerConfig):
        self.config = config

    def calculate(self, mode: TransferMode, priority: TransferPriority,
                  own_transfer: bool, currency: Currency) -> Tuple[Money, Money]:
        if priority == TransferPriority.HIGH:
            fee = Decimal(self.config.high_priority_fee)
        elif own_transfer and self.config.own_account_transfers_free:
            fee = Decimal('0')
        else:
            fee = Decimal(self.config.transfer_fees.get(mode.value, Decimal('0')))

        tax = round_money(fee * Decimal(self.config.service_tax_rate))
        return Money(fee, currency), Money(tax, currency)


class TransactionStore:
    """Persists transactions and answers lookups"""

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name

    def save(self, transaction: Transaction) -> None:
        """Save within the caller's unit of work"""
        self.storage.save(self.table_name, transaction.id, self._to_dict(transaction))

    def save_out_of_band(self, transaction: Transaction) -> None:
        """Save immediately, surviving a rollback of the caller's unit of work"""
        self.storage.save_out_of_band(self.table_name, transaction.id, self._to_dict(transaction))

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return self._from_dict(data) if data else None

    def find_by_reference(self, reference_number: str) -> Optional[Transaction]:
        matches = self.storage.find(self.table_name, {"reference_number": reference_number})
        if not matches:
            return None
        return self._from_dict(matches[0])

    def for_account(self, account_number: str) -> List[Transaction]:
        """All transactions touching an account, oldest first"""
        rows = {}
        for key in ("from_account_number", "to_account_number"):
            for data in self.storage.find(self.table_name, {key: account_number}):
                rows[data['id']] = data
        transactions = [self._from_dict(data) for data in rows.values()]
        transactions.sort(key=lambda t: (t.completed_at or t.created_at, t.created_at))
        return transactions

    def for_entity(self, entity_type: str, entity_id: str) -> List[Transaction]:
        rows = self.storage.find(self.table_name, {
            "related_entity_type": entity_type,
            "related_entity_id": entity_id
        })
        transactions = [self._from_dict(data) for data in rows]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _to_dict(self, transaction: Transaction) -> Dict:
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['currency'] = transaction.currency.code
        result['mode'] = transaction.mode.value
        result['priority'] = transaction.priority.value
        result['status'] = transaction.status.value

        for field in ['amount', 'fee', 'tax', 'total_amount', 'balance_before',
                      'balance_after', 'counterparty_balance_before',
                      'counterparty_balance_after']:
            value = getattr(transaction, field)
            result[field] = str(value.amount) if value is not None else None

        for field in ['completed_at', 'cancelled_at']:
            value = getattr(transaction, field)
            result[field] = value.isoformat() if value else None

        return result

    def _from_dict(self, data: Dict) -> Transaction:
        currency = Currency[data['currency']]

        def get_money(field: str) -> Optional[Money]:
            if data.get(field) is None:
                return None
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            reference_number=data['reference_number'],
            transaction_type=TransactionType(data['transaction_type']),
            currency=currency,
            amount=get_money('amount'),
            fee=get_money('fee'),
            tax=get_money('tax'),
            total_amount=get_money('total_amount'),
            mode=TransferMode(data['mode']),
            status=TransactionStatus(data['status']),
            from_account_number=data.get('from_account_number'),
            to_account_number=data.get('to_account_number'),
            priority=TransferPriority(data.get('priority', 'normal')),
            balance_before=get_money('balance_before'),
            balance_after=get_money('balance_after'),
            counterparty_balance_before=get_money('counterparty_balance_before'),
            counterparty_balance_after=get_money('counterparty_balance_after'),
            requires_approval=data.get('requires_approval', False),
            description=data.get('description', ''),
            receipt_number=data.get('receipt_number'),
            related_entity_type=data.get('related_entity_type'),
            related_entity_id=data.get('related_entity_id'),
            initiated_by=data.get('initiated_by'),
            branch_id=data.get('branch_id'),
            error_code=data.get('error_code'),
            error_message=data.get('error_message'),
            remarks=data.get('remarks'),
            completed_at=get_datetime('completed_at'),
            cancelled_at=get_datetime('cancelled_at')
        )


def new_transaction(
    transaction_type: TransactionType,
    amount: Money,
    mode: TransferMode,
    status: TransactionStatus,
    from_account_number: Optional[str] = None,
    to_account_number: Optional[str] = None,
    fee: Optional[Money] = None,
    tax: Optional[Money] = None,
    reference_number: Optional[str] = None,
    priority: TransferPriority = TransferPriority.NORMAL,
    description: str = "",
    requires_approval: bool = False,
    related_entity_type: Optional[str] = None,
    related_entity_id: Optional[str] = None,
    initiated_by: Optional[str] = None,
    branch_id: Optional[str] = None
) -> Transaction:
    """Build a fresh transaction record with generated identifiers"""
    now = datetime.now(timezone.utc)
    fee = fee or Money.zero(amount.currency)
    tax = tax or Money.zero(amount.currency)
    return Transaction(
        id=generate_transaction_id(),
        created_at=now,
        updated_at=now,
        reference_number=reference_number or generate_reference_number(),
        transaction_type=transaction_type,
        currency=amount.currency,
        amount=amount,
        fee=fee,
        tax=tax,
        total_amount=amount + fee + tax,
        mode=mode,
        status=status,
        from_account_number=from_account_number,
        to_account_number=to_account_number,
        priority=priority,
        requires_approval=requires_approval,
        description=description,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        initiated_by=initiated_by,
        branch_id=branch_id
    )
