"""
Money Module

Fixed-point monetary amounts bound to a currency. All amounts are Decimal
and rounded ROUND_HALF_UP to the currency precision. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

from .errors import ValidationFailed

# Set global decimal context for financial precision
getcontext().prec = 28

TWO_PLACES = Decimal('0.01')

# Largest amount a single operation may carry
MAX_AMOUNT = Decimal('999999999999999.99')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    INR = ("INR", 2)
    BDT = ("BDT", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def round_money(value: Decimal) -> Decimal:
    """Round an intermediate Decimal to two places, half up"""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Mixing currencies in arithmetic or comparisons is rejected.
    """
    amount: Decimal
    currency: Currency = Currency.USD

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        try:
            rounded = self.amount.quantize(
                Decimal('0.1') ** self.currency.precision,
                rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            raise ValidationFailed(f"Amount {self.amount} is out of range")
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = Currency.USD) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValidationFailed(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Union[Money, Decimal, int, str],
                 currency: Currency = Currency.USD) -> Money:
    """
    Validate a caller supplied amount and convert it to Money

    Args:
        value: Money, Decimal, int or numeric string
        currency: Currency to bind plain values to

    Returns:
        Positive Money in the requested currency

    Raises:
        ValidationFailed: If the value is a float, not numeric, not positive,
            above MAX_AMOUNT, carries more fractional digits than the currency
            allows, or is Money in another currency
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise ValidationFailed(
                f"Amount currency {value.currency.code} does not match {currency.code}"
            )
        if not value.is_positive():
            raise ValidationFailed("Amount must be positive")
        if value.amount > MAX_AMOUNT:
            raise ValidationFailed(f"Amount exceeds the maximum of {MAX_AMOUNT}")
        return value

    if isinstance(value, (float, bool)):
        raise ValidationFailed("Amounts must be Decimal, int or str, never float")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"Cannot convert '{value}' to an amount")

    if not amount.is_finite():
        raise ValidationFailed("Amount must be a finite number")
    if amount <= 0:
        raise ValidationFailed("Amount must be positive")
    if amount > MAX_AMOUNT:
        raise ValidationFailed(f"Amount exceeds the maximum of {MAX_AMOUNT}")

    exponent = amount.normalize().as_tuple().exponent
    if exponent < -currency.precision:
        raise ValidationFailed(
            f"Amount {amount} has more than {currency.precision} fractional digits"
        )

    return Money(amount, currency)
