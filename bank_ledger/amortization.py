"""
Amortization Module

Pure loan arithmetic: EMI, the fixed-rate repayment schedule, prorated
accrued interest, late penalties and calendar month arithmetic. Nothing in
here touches storage.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List
import calendar

from .money import round_money
from .errors import ValidationFailed

PENALTY_PERIOD_DAYS = 30


@dataclass
class ScheduleRow:
    """One computed installment of a repayment schedule"""
    installment_number: int
    due_date: date
    principal: Decimal
    interest: Decimal
    total: Decimal
    balance_after: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start_date: date, end_date: date) -> int:
    """Whole calendar months from start_date up to end_date (never negative)"""
    if end_date <= start_date:
        return 0
    months = (end_date.year - start_date.year) * 12 + (end_date.month - start_date.month)
    if add_months(start_date, months) > end_date:
        months -= 1
    return max(months, 0)


def monthly_rate(annual_rate: Decimal) -> Decimal:
    """Annual percentage rate to a monthly fraction (9.6 -> 0.008)"""
    return Decimal(annual_rate) / Decimal('1200')


def calculate_emi(principal: Decimal, annual_rate: Decimal, tenure_months: int) -> Decimal:
    """
    Equated monthly installment for a fixed-rate loan

    EMI = P * r * (1 + r)^n / ((1 + r)^n - 1), or P / n when r is zero,
    rounded half up to two places.

    Args:
        principal: Loan principal
        annual_rate: Annual interest rate in percent
        tenure_months: Number of monthly installments

    Returns:
        EMI as a two-place Decimal
    """
    if tenure_months <= 0:
        raise ValidationFailed("Tenure must be at least one month")
    if principal <= 0:
        raise ValidationFailed("Principal must be positive")

    rate = monthly_rate(annual_rate)
    if rate == 0:
        return round_money(principal / Decimal(tenure_months))

    factor = (Decimal('1') + rate) ** tenure_months
    return round_money(principal * rate * factor / (factor - Decimal('1')))


def build_schedule(principal: Decimal, annual_rate: Decimal, tenure_months: int,
                   anchor_date: date) -> List[ScheduleRow]:
    """
    Generate the full repayment schedule

    Each installment's interest is the outstanding balance times the monthly
    rate, and its principal is EMI minus interest. The last installment takes
    whatever principal remains, so the balance ends at exactly zero and the
    principal components sum to the loan principal. Installment k is due k
    months after the anchor date.
    """
    emi = calculate_emi(principal, annual_rate, tenure_months)
    rate = monthly_rate(annual_rate)
    remaining = round_money(principal)
    rows = []

    for number in range(1, tenure_months + 1):
        interest = round_money(remaining * rate)

        if number == tenure_months:
            principal_part = remaining
        else:
            principal_part = min(max(emi - interest, Decimal('0')), remaining)

        remaining = remaining - principal_part
        rows.append(ScheduleRow(
            installment_number=number,
            due_date=add_months(anchor_date, number),
            principal=principal_part,
            interest=interest,
            total=principal_part + interest,
            balance_after=remaining
        ))

    return rows


def late_penalty(overdue_amount: Decimal, monthly_penalty_rate: Decimal, days_overdue: int) -> Decimal:
    """Penalty = overdue * rate% / 30 * days, rounded to two places"""
    if days_overdue <= 0 or overdue_amount <= 0:
        return Decimal('0.00')
    return round_money(
        overdue_amount * Decimal(monthly_penalty_rate) / Decimal('100')
        / Decimal(PENALTY_PERIOD_DAYS) * Decimal(days_overdue)
    )


def prorated_interest(period_interest: Decimal, period_start: date, period_end: date,
                      as_of: date) -> Decimal:
    """Share of a period's interest accrued between period_start and as_of"""
    period_days = (period_end - period_start).days
    if period_days <= 0 or as_of <= period_start:
        return Decimal('0.00')
    elapsed = min((as_of - period_start).days, period_days)
    return round_money(period_interest * Decimal(elapsed) / Decimal(period_days))
