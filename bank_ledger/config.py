"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Dict

from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Bank ledger engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///path/to/ledger.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"

    # Locking configuration
    lock_timeout_seconds: float = 5.0

    # Transfer fees and tax
    transfer_fees: Dict[str, Decimal] = {
        "neft": Decimal("2.00"),
        "rtgs": Decimal("7.00"),
        "imps": Decimal("5.00"),
        "upi": Decimal("0.00"),
        "cash": Decimal("0.00"),
        "cheque": Decimal("1.00"),
        "card": Decimal("3.00"),
        "internal": Decimal("0.00"),
    }
    high_priority_fee: Decimal = Decimal("7.00")
    own_account_transfers_free: bool = True
    service_tax_rate: Decimal = Decimal("0.18")
    high_value_threshold: Decimal = Decimal("10000.00")

    # Loan rules
    loan_min_principal: Decimal = Decimal("1000.00")
    loan_max_principal: Decimal = Decimal("10000000.00")
    loan_min_tenure_months: int = 3
    loan_max_tenure_months: int = 360
    loan_max_interest_rate: Decimal = Decimal("36.00")
    loan_default_grace_days: int = 90
    loan_late_penalty_rate: Decimal = Decimal("2.00")  # percent per 30 days overdue
    foreclosure_charge_rate: Decimal = Decimal("0.00")  # percent of outstanding
    loan_min_monthly_income: Decimal = Decimal("1000.00")
    loan_max_dti_ratio: Decimal = Decimal("50.00")  # percent of monthly income
    loan_max_ltv_ratio: Decimal = Decimal("80.00")  # percent of collateral value

    # DPS rules
    dps_min_installment: Decimal = Decimal("100.00")
    dps_min_tenure_months: int = 6
    dps_max_tenure_months: int = 120
    dps_max_interest_rate: Decimal = Decimal("20.00")
    dps_late_fee: Decimal = Decimal("5.00")
    dps_late_penalty_rate: Decimal = Decimal("0.00")  # percent of the installment
    dps_grace_days: int = 0
    dps_missed_installment_threshold: int = 3
    dps_premature_rate_reduction: Decimal = Decimal("2.00")  # percentage points

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "BANK_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get the global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
