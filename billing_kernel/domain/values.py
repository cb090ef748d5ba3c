"""
Values -- Immutable, self-validating monetary value objects.

Responsibility:
    Currency, Money and ExchangeRate replace bare Decimal/str pairs wherever
    an amount crosses a boundary inside the engines.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Depends only on
    billing_kernel.domain.currency.

Invariants enforced:
    - Amounts are Decimal, never float.
    - Currency codes are validated against CurrencyRegistry on construction.
    - Rounding precision is derived from the currency's minor unit, always
      ROUND_HALF_UP.
    - Arithmetic and comparison never mix currencies silently.

Failure modes:
    - InvalidCurrencyError for unknown codes.
    - ValueError for non-numeric amounts, non-positive rates, or mixed
      currencies.
    - TypeError when a float is passed as an amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from billing_kernel.domain.currency import CurrencyRegistry


def to_decimal(value: Decimal | str | int, label: str = "amount") -> Decimal:
    """Coerce str/int to Decimal; floats are refused outright."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError(f"{label} must not be a float: {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid {label}: {value!r}") from e


@dataclass(frozen=True, slots=True)
class Currency:
    """ISO 4217 currency code, uppercased and validated on construction."""

    code: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", CurrencyRegistry.validate(self.code))

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.code)

    @property
    def minor_unit(self) -> Decimal:
        return CurrencyRegistry.get_minor_unit(self.code)

    def quantize(self, amount: Decimal) -> Decimal:
        """Round ``amount`` half-up to this currency's minor unit."""
        return amount.quantize(self.minor_unit, rounding=ROUND_HALF_UP)

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal amount with its Currency.  Does NOT auto-round --
        callers call ``.round()`` at the boundary where rounding is defined.
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_decimal(self.amount))
        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        elif not isinstance(self.currency, Currency):
            raise TypeError(f"currency must be Currency or str, got {type(self.currency)}")

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        return cls(amount=to_decimal(amount), currency=currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        return cls(amount=Decimal("0"), currency=currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    def round(self) -> Money:
        """Return a copy rounded half-up to the currency's minor unit."""
        return Money(amount=self.currency.quantize(self.amount), currency=self.currency)

    def _check_same_currency(self, other: Money, op: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {op} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_same_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_same_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __mul__(self, factor: Decimal | int | str) -> Money:
        if isinstance(factor, Money):
            return NotImplemented
        return Money(amount=self.amount * to_decimal(factor, "factor"), currency=self.currency)

    __rmul__ = __mul__

    def __lt__(self, other: Money) -> bool:
        self._check_same_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._check_same_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        self._check_same_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        self._check_same_currency(other, "compare")
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency!r})"


@dataclass(frozen=True, slots=True)
class ExchangeRate:
    """
    Quote of ``rate`` units of ``quote_currency`` per 1 unit of ``currency``.

    For an invoice, ``currency`` is the invoice currency and
    ``quote_currency`` is the configured base (local) currency.
    ``convert`` works in both directions: multiplying out of ``currency``
    and dividing out of ``quote_currency``.  A pair the quote does not
    bridge raises ValueError.
    """

    currency: Currency
    quote_currency: Currency
    rate: Decimal

    def __post_init__(self) -> None:
        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        if isinstance(self.quote_currency, str):
            object.__setattr__(self, "quote_currency", Currency(self.quote_currency))
        object.__setattr__(self, "rate", to_decimal(self.rate, "exchange rate"))
        if self.rate <= 0:
            raise ValueError(f"Exchange rate must be positive: {self.rate}")

    @classmethod
    def of(
        cls,
        currency: str | Currency,
        quote_currency: str | Currency,
        rate: Decimal | str | int,
    ) -> ExchangeRate:
        return cls(currency=currency, quote_currency=quote_currency, rate=to_decimal(rate))

    def bridges(self, a: Currency, b: Currency) -> bool:
        """True if this quote converts between ``a`` and ``b``."""
        if a == b:
            return True
        return {a, b} == {self.currency, self.quote_currency}

    def convert(self, money: Money, to: Currency) -> Money:
        """Convert ``money`` into ``to`` (unrounded)."""
        if money.currency == to:
            return money
        if money.currency == self.currency and to == self.quote_currency:
            return Money(amount=money.amount * self.rate, currency=to)
        if money.currency == self.quote_currency and to == self.currency:
            return Money(amount=money.amount / self.rate, currency=to)
        raise ValueError(
            f"Rate {self} cannot convert {money.currency} to {to}"
        )

    def __str__(self) -> str:
        return f"{self.currency}/{self.quote_currency} = {self.rate}"
