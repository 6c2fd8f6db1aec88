"""
Currency Support Module

Currency codes, Decimal conversion and rounding helpers for payment and
balance arithmetic. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Any, Optional
from enum import Enum
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    GHS = ("GHS", 2)  # Ghana Cedi, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """
        Look up a currency by code, case-insensitively.

        The pre-redenomination cedi code ``GHC`` is accepted as ``GHS``
        because older vouchers still carry it.
        """
        if isinstance(code, Currency):
            return code
        normalized = (code or "").strip().upper()
        if normalized == "GHC":
            normalized = "GHS"
        try:
            return cls[normalized]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Convert a number or numeric string to Decimal without passing through float.

    Raises:
        ValidationError: If the value cannot be interpreted as a number
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, str):
        # Strip thousands separators and currency symbols
        value = re.sub(r'[^\d.\-+eE]', '', value.strip())
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Cannot convert {field_name} '{value}' to Decimal")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def round_amount(value: Decimal, currency: Optional[Currency] = None) -> Decimal:
    """
    Round a Decimal to the currency precision (2 places by default)

    Raises:
        ValidationError: If the rounded amount exceeds the decimal context precision
    """
    exponent = CENT if currency is None else Decimal('0.1') ** currency.precision
    try:
        return value.quantize(exponent, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Amount {value} is too large to round to {exponent}")


def convert_amount(
    amount: Decimal,
    from_currency: Currency,
    to_currency: Currency,
    fx_rate: Decimal,
    reporting_currency: Currency = Currency.USD
) -> Decimal:
    """
    Convert an unrounded amount using a voucher FX rate.

    Vouchers carry a single ``fx_rate`` quoted as units of the
    non-reporting currency per one unit of the reporting currency, so
    only conversions to or from the reporting currency can be expressed.

    Raises:
        ValueError: If the pair cannot be converted with a single rate
    """
    if from_currency == to_currency:
        return amount
    if fx_rate is None or fx_rate <= 0:
        raise ValueError(
            f"A positive FX rate is required to convert {from_currency.code} to {to_currency.code}"
        )
    if to_currency == reporting_currency:
        return amount / fx_rate
    if from_currency == reporting_currency:
        return amount * fx_rate
    raise ValueError(
        f"No conversion path from {from_currency.code} to {to_currency.code} "
        f"via {reporting_currency.code}"
    )
