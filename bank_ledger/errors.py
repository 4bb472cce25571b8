"""
Error Taxonomy Module

Typed errors raised by the ledger, loan and DPS engines. Every error carries
a stable ``kind`` code and a human readable message so the calling layer can
map it to a response without string matching.
"""

from typing import Any, Dict, Optional


class BankingError(Exception):
    """Base class for all core banking errors"""

    kind = "BANKING_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error payload for the calling layer"""
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class NotFound(BankingError, LookupError):
    """Account, loan, DPS or transaction does not exist"""
    kind = "NOT_FOUND"


class InvalidState(BankingError):
    """Operation attempted on an entity not in a valid status"""
    kind = "INVALID_STATE"


class AccountInactive(InvalidState):
    """Account is FROZEN, CLOSED or INACTIVE"""
    kind = "ACCOUNT_INACTIVE"


class LoanAlreadyDisbursed(InvalidState):
    """Disbursement already completed for the loan"""
    kind = "LOAN_ALREADY_DISBURSED"


class InsufficientBalance(BankingError):
    """Debit would take an account below zero"""
    kind = "INSUFFICIENT_BALANCE"


class ValidationFailed(BankingError, ValueError):
    """Amount, tenure, rate or other input out of bounds"""
    kind = "VALIDATION_FAILED"


class LockTimeout(BankingError):
    """A resource lock could not be acquired in time; safe to retry"""
    kind = "LOCK_TIMEOUT"
    retryable = True


class DuplicateOperation(BankingError):
    """
    Reference number already used.

    Raised internally when an idempotent retry is detected; the engines catch
    it and hand the prior transaction back to the caller.
    """
    kind = "DUPLICATE_OPERATION"

    def __init__(self, message: str, prior_transaction: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.prior_transaction = prior_transaction


class ExternalPostingFailed(BankingError):
    """The ledger leg of a loan or DPS operation could not be applied"""
    kind = "EXTERNAL_POSTING_FAILED"


class DisbursementFailed(ExternalPostingFailed):
    """Ledger credit of a loan disbursement failed"""
    kind = "DISBURSEMENT_FAILED"
