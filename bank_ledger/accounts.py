"""
Account Management Module

Account records, lifecycle states and the account registry. Balances are
only ever changed by the ledger engine while it holds the account lock; this
module opens accounts and moves them between statuses.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .money import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locks import LockManager, LockKey
from .context import CallerContext, resolve_context
from .errors import NotFound, InvalidState, ValidationFailed
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Deposit account products"""
    SAVINGS = "savings"
    CURRENT = "current"
    SALARY = "salary"
    FIXED_DEPOSIT = "fixed_deposit"
    LOAN = "loan"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    FROZEN = "frozen"
    CLOSED = "closed"


class KYCStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


ACCOUNT_NUMBER_PREFIXES = {
    AccountType.SAVINGS: "SAV",
    AccountType.CURRENT: "CUR",
    AccountType.SALARY: "SAL",
    AccountType.FIXED_DEPOSIT: "FXD",
    AccountType.LOAN: "LON",
}


@dataclass
class Account(StorageRecord):
    """Customer account; the record id is the account number"""
    customer_id: str
    branch_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    interest_rate: Decimal = Decimal('0')
    status: AccountStatus = AccountStatus.ACTIVE
    kyc_status: KYCStatus = KYCStatus.VERIFIED
    last_transaction_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def account_number(self) -> str:
        return self.id

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountManager:
    """
    Opens accounts and manages their status transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: Optional[LockManager] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks or LockManager()
        self.accounts_table = "accounts"
        self.logger = get_logger("bank_ledger.accounts")

    def open_account(
        self,
        customer_id: str,
        branch_id: str,
        account_type: AccountType = AccountType.SAVINGS,
        currency: Currency = Currency.USD,
        interest_rate: Decimal = Decimal('0'),
        account_number: Optional[str] = None,
        kyc_status: KYCStatus = KYCStatus.VERIFIED,
        context: Optional[CallerContext] = None
    ) -> Account:
        """
        Register a new account with a zero balance

        Args:
            customer_id: Owning customer reference
            branch_id: Home branch reference
            account_type: Account product
            currency: Account currency
            interest_rate: Annual interest rate in percent
            account_number: Explicit account number (generated if omitted)
            kyc_status: KYC status reported by the onboarding collaborator
            context: Caller identity

        Returns:
            Created Account
        """
        context = resolve_context(context)
        if not customer_id:
            raise ValidationFailed("Customer ID is required")
        if interest_rate < 0:
            raise ValidationFailed("Interest rate cannot be negative")

        account_number = account_number or self._generate_account_number(account_type)
        if self.storage.exists(self.accounts_table, account_number):
            raise ValidationFailed(f"Account {account_number} already exists")

        now = datetime.now(timezone.utc)
        account = Account(
            id=account_number,
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            branch_id=branch_id,
            account_type=account_type,
            currency=currency,
            balance=Money.zero(currency),
            interest_rate=interest_rate,
            kyc_status=kyc_status
        )
        self.save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.account_number,
            metadata={
                "customer_id": customer_id,
                "branch_id": branch_id,
                "account_type": account_type.value,
                "currency": currency.code
            },
            user_id=context.actor_id,
            correlation_id=context.correlation_id
        )
        log_action(
            self.logger, "info", f"Opened account {account.account_number}",
            user_id=context.actor_id, action="account_opened",
            resource=account.account_number, correlation_id=context.correlation_id,
            branch_id=branch_id
        )
        return account

    def get_account(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        data = self.storage.load(self.accounts_table, account_number)
        if data:
            return self._account_from_dict(data)
        return None

    def require_account(self, account_number: str) -> Account:
        """Get account by number or raise NotFound"""
        account = self.get_account(account_number)
        if account is None:
            raise NotFound(f"Account {account_number} not found",
                           details={"account_number": account_number})
        return account

    def get_customer_accounts(self, customer_id: str) -> List[Account]:
        """Get all accounts for a customer"""
        data = self.storage.find(self.accounts_table, {"customer_id": customer_id})
        return [self._account_from_dict(d) for d in data]

    def list_accounts(self) -> List[Account]:
        return [self._account_from_dict(d) for d in self.storage.load_all(self.accounts_table)]

    def update_status(
        self,
        account_number: str,
        new_status: AccountStatus,
        reason: str,
        context: Optional[CallerContext] = None
    ) -> Account:
        """
        Move an account to a new status under its lock

        A CLOSED account is terminal, and closing requires a zero balance so
        that no money disappears with the account.
        """
        context = resolve_context(context)
        self.require_account(account_number)

        with self.locks.acquire(LockKey.account(account_number)):
            with self.storage.atomic():
                account = self.require_account(account_number)
                old_status = account.status

                if old_status == AccountStatus.CLOSED:
                    raise InvalidState(f"Account {account_number} is closed")
                if old_status == new_status:
                    return account
                if new_status == AccountStatus.CLOSED and not account.balance.is_zero():
                    raise InvalidState(
                        f"Account {account_number} has balance {account.balance.to_string()}; "
                        "it must be zero before closing"
                    )

                now = datetime.now(timezone.utc)
                account.status = new_status
                account.updated_at = now
                if new_status == AccountStatus.CLOSED:
                    account.closed_at = now
                self.save_account(account)

                self.audit_trail.log_event(
                    event_type=(AuditEventType.ACCOUNT_CLOSED
                                if new_status == AccountStatus.CLOSED
                                else AuditEventType.ACCOUNT_STATUS_CHANGED),
                    entity_type="account",
                    entity_id=account_number,
                    metadata={
                        "old_status": old_status.value,
                        "new_status": new_status.value,
                        "reason": reason
                    },
                    user_id=context.actor_id,
                    correlation_id=context.correlation_id
                )

        log_action(
            self.logger, "info",
            f"Account {account_number} moved from {old_status.value} to {new_status.value}",
            user_id=context.actor_id, action="account_status_changed",
            resource=account_number, correlation_id=context.correlation_id,
            extra={"reason": reason}
        )
        return account

    def freeze_account(self, account_number: str, reason: str,
                       context: Optional[CallerContext] = None) -> Account:
        return self.update_status(account_number, AccountStatus.FROZEN, reason, context)

    def unfreeze_account(self, account_number: str, reason: str,
                         context: Optional[CallerContext] = None) -> Account:
        return self.update_status(account_number, AccountStatus.ACTIVE, reason, context)

    def close_account(self, account_number: str, reason: str,
                      context: Optional[CallerContext] = None) -> Account:
        return self.update_status(account_number, AccountStatus.CLOSED, reason, context)

    def _generate_account_number(self, account_type: AccountType) -> str:
        prefix = ACCOUNT_NUMBER_PREFIXES[account_type]
        return f"{prefix}{uuid.uuid4().int % 10**10:010d}"

    def save_account(self, account: Account) -> None:
        """Save account to storage (joins the caller's unit of work)"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        result['interest_rate'] = str(account.interest_rate)
        result['status'] = account.status.value
        result['kyc_status'] = account.kyc_status.value
        result['last_transaction_at'] = (
            account.last_transaction_at.isoformat() if account.last_transaction_at else None
        )
        result['closed_at'] = account.closed_at.isoformat() if account.closed_at else None
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        currency = Currency[data['currency']]

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            branch_id=data['branch_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            interest_rate=Decimal(data.get('interest_rate', '0')),
            status=AccountStatus(data['status']),
            kyc_status=KYCStatus(data['kyc_status']),
            last_transaction_at=get_datetime('last_transaction_at'),
            closed_at=get_datetime('closed_at')
        )
