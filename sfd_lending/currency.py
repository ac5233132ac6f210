"""
Currency Module

ISO 4217 currencies used by partner SFDs and the Money value type. FCFA
(XOF) has no minor unit, so every stored amount is a whole number.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

# High precision for intermediate amortization factors
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    XOF = ("XOF", 0)  # West African CFA franc
    XAF = ("XAF", 0)  # Central African CFA franc
    EUR = ("EUR", 2)
    USD = ("USD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def unit(self) -> Decimal:
        """Smallest representable amount"""
        return Decimal('0.1') ** self.precision if self.precision else Decimal('1')


DEFAULT_CURRENCY = Currency.XOF


def currency_from_code(code: str) -> Currency:
    """Look up a Currency by ISO code (case-insensitive)"""
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}")


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """Convert a number to Decimal via its string form"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_amount(value: Union[Decimal, int, str, float], currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Round a raw amount to the currency's unit, half up"""
    return to_decimal(value).quantize(currency.unit, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable amount in one currency, rounded half up to the currency unit.
    Adding or subtracting amounts in different currencies raises ValueError.
    """
    amount: Decimal
    currency: Currency = DEFAULT_CURRENCY

    def __post_init__(self):
        object.__setattr__(self, 'amount', round_amount(self.amount, self.currency))

    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot combine {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.amount:,.0f} {self.currency.code}"
        return f"{self.amount:,.{self.currency.precision}f} {self.currency.code}"


def total(amounts: Iterable[Decimal], currency: Currency = DEFAULT_CURRENCY) -> Money:
    """Sum amounts as Money in a single currency"""
    return sum((Money(amount, currency) for amount in amounts), Money(Decimal('0'), currency))
