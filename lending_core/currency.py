"""
Money Module

Single-currency money representation with Decimal precision. The book is kept
in whole currency units; NEVER use float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

# High precision for intermediate annuity factors
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 code with minor-unit precision"""
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit in circulation

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


DEFAULT_CURRENCY = Currency.UGX

AmountLike = Union["Money", Decimal, int, float, str]


@dataclass(frozen=True)
class Money:
    """
    Immutable money value, rounded to the currency precision on construction.
    """
    amount: Decimal
    currency: Currency = DEFAULT_CURRENCY

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = DEFAULT_CURRENCY) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def of(cls, value: AmountLike, currency: Currency = DEFAULT_CURRENCY) -> 'Money':
        """Coerce a Money, Decimal, int, float or numeric string into Money"""
        if isinstance(value, Money):
            if value.currency != currency:
                raise ValueError(f"Expected {currency.code}, got {value.currency.code}")
            return value
        return cls(to_decimal(value), currency)

    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} vs {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display, e.g. 'UGX 1,083,096'"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a numeric value to Decimal

    Strings may carry a currency code and comma thousands separators
    ("UGX 1,083,096"). Floats go through str() so 0.1 stays 0.1.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        clean_value = re.sub(r'[^\d.\-+]', '', value.strip().replace(',', ''))
        if not clean_value:
            raise ValueError(f"Cannot convert {value!r} to Decimal")
        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValueError(f"Cannot convert {value!r} to Decimal")
    else:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result
