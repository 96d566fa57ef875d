"""
Currency Support Module

Transfers are capped in the currency of record (GBP); bonuses and converted
transfer amounts are held in the payout currency (PKR). NEVER uses float for
monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    GBP = ("GBP", 2)  # British Pound, currency of record
    PKR = ("PKR", 2)  # Pakistani Rupee, payout and bonus currency

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


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

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise InvalidAmountError(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

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

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


AmountLike = Union[Money, Decimal, int, str]


def to_money(value: AmountLike, currency: Currency) -> Money:
    """
    Coerce a caller-supplied amount into Money.

    Floats are rejected: amounts must arrive as Decimal, int, str or Money.

    Raises:
        InvalidAmountError: If the amount cannot be parsed, is not finite or
            is in a different currency
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmountError(
                f"Expected amount in {currency.code}, got {value.currency.code}"
            )
        return value

    if isinstance(value, bool) or not isinstance(value, (Decimal, int, str)):
        raise InvalidAmountError(f"Unsupported amount type: {type(value).__name__}")

    try:
        amount = Decimal(value.strip()) if isinstance(value, str) else Decimal(value)
    except InvalidOperation:
        raise InvalidAmountError(f"Cannot convert '{value}' to an amount") from None

    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value}")

    return Money(amount, currency)


def require_positive(money: Money) -> Money:
    """Reject zero and negative amounts"""
    if not money.is_positive():
        raise InvalidAmountError(f"Amount must be positive, got {money.to_string()}")
    return money
