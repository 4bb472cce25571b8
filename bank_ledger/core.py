"""
Banking Core

Wires storage, audit trail, locks and the engines together from a
LedgerConfig and exposes the external operations in one place.
"""

from datetime import date
from typing import Any, Dict, Optional

from .config import LedgerConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .locks import LockManager
from .accounts import AccountManager
from .ledger import LedgerEngine
from .loans import LoanManager
from .dps import DPSManager
from .statements import StatementBuilder
from .context import CallerContext, resolve_context
from .logging_config import setup_logging, get_logger, log_action


class BankingCore:
    """Core banking system with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        setup_logging(self.config.log_level, log_format=self.config.log_format)
        self.logger = get_logger("bank_ledger.core")

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.locks = LockManager(self.config.lock_timeout_seconds)

        self.account_manager = AccountManager(self.storage, self.audit_trail, self.locks)
        self.ledger = LedgerEngine(
            self.storage, self.account_manager, self.audit_trail, self.locks, self.config
        )
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.ledger, self.audit_trail,
            self.locks, self.config
        )
        self.dps_manager = DPSManager(
            self.storage, self.account_manager, self.ledger, self.audit_trail,
            self.locks, self.config
        )
        self.statements = StatementBuilder(
            self.account_manager, self.ledger, self.loan_manager, self.dps_manager
        )

    # Accounts and ledger

    def open_account(self, *args, **kwargs):
        return self.account_manager.open_account(*args, **kwargs)

    def balance(self, account_number: str):
        return self.ledger.balance(account_number)

    def deposit(self, *args, **kwargs):
        return self.ledger.deposit(*args, **kwargs)

    def withdraw(self, *args, **kwargs):
        return self.ledger.withdraw(*args, **kwargs)

    def transfer(self, *args, **kwargs):
        return self.ledger.transfer(*args, **kwargs)

    # Loans

    def check_eligibility(self, *args, **kwargs):
        return self.loan_manager.check_eligibility(*args, **kwargs)

    def apply_for_loan(self, *args, **kwargs):
        return self.loan_manager.apply_for_loan(*args, **kwargs)

    def search_loans(self, *args, **kwargs):
        return self.loan_manager.search_loans(*args, **kwargs)

    def approve_loan(self, *args, **kwargs):
        return self.loan_manager.approve_loan(*args, **kwargs)

    def reject_loan(self, *args, **kwargs):
        return self.loan_manager.reject_loan(*args, **kwargs)

    def disburse_loan(self, *args, **kwargs):
        return self.loan_manager.disburse_loan(*args, **kwargs)

    def repay_loan(self, *args, **kwargs):
        return self.loan_manager.repay_loan(*args, **kwargs)

    def foreclose_loan(self, *args, **kwargs):
        return self.loan_manager.foreclose_loan(*args, **kwargs)

    # DPS

    def create_dps(self, *args, **kwargs):
        return self.dps_manager.create_dps(*args, **kwargs)

    def pay_installment(self, *args, **kwargs):
        return self.dps_manager.pay_installment(*args, **kwargs)

    def mature_dps(self, *args, **kwargs):
        return self.dps_manager.mature_dps(*args, **kwargs)

    def close_dps(self, *args, **kwargs):
        return self.dps_manager.close_dps(*args, **kwargs)

    def calculate_maturity(self, *args, **kwargs):
        return self.dps_manager.calculate_maturity(*args, **kwargs)

    # Batch

    def run_daily_sweep(self, as_of: Optional[date] = None,
                        context: Optional[CallerContext] = None) -> Dict[str, Any]:
        """
        Run the end-of-day batch: DPS auto-debits, then missed installment
        processing, then loan default marking

        Returns:
            Results of each sweep keyed by name
        """
        context = resolve_context(context)
        as_of = as_of or date.today()

        results = {
            "as_of": as_of.isoformat(),
            "dps_auto_debit": self.dps_manager.run_auto_debits(as_of, context=context),
            "dps_missed_installments": self.dps_manager.process_missed_installments(
                as_of, context=context
            ),
            "loan_defaults": self.loan_manager.mark_defaults(as_of, context=context),
        }

        log_action(
            self.logger, "info", f"Daily sweep for {as_of.isoformat()} completed",
            user_id=context.actor_id, action="daily_sweep",
            resource="sweep", correlation_id=context.correlation_id,
            extra=results
        )
        return results

    def verify_audit_trail(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()
