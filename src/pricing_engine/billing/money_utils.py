"""
Money and currency utilities using py-moneyed and Babel.

All engine arithmetic goes through ``MoneyHandler`` so that rounding is
centralized: amounts are always normalised to the currency's minor units and
fractional results are rounded half-up (away from zero).
"""

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import TYPE_CHECKING, Any, TypeAlias

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

from pricing_engine.billing.exceptions import CurrencyMismatchError

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from pricing_engine.billing.collaborators import CurrencyConverter

# Common currencies for quick access
USD = Currency("USD")
EUR = Currency("EUR")
GBP = Currency("GBP")
JPY = Currency("JPY")

DEFAULT_LOCALE = "en_US"

Factor: TypeAlias = Fraction | Decimal | int | str


class CurrencyPrecision:
    """Minor-unit precision per currency.

    Defaults come from Babel's CLDR data; explicit entries (configuration or
    the currency collaborator) take precedence.
    """

    def __init__(self, overrides: Mapping[str, int] | None = None) -> None:
        self._table: dict[str, int] = {}
        for code, digits in (overrides or {}).items():
            self.set(code, digits)

    def set(self, currency_code: str, digits: int) -> None:
        if digits < 0:
            raise ValueError(f"Precision for {currency_code} must be >= 0")
        self._table[currency_code.upper()] = digits

    def of(self, currency_code: str) -> int:
        code = currency_code.upper()
        if code not in self._table:
            self._table[code] = get_currency_precision(code)
        return self._table[code]

    async def load_from(self, converter: "CurrencyConverter", currencies: Iterable[str]) -> None:
        """Populate the table from the currency collaborator."""
        for code in currencies:
            self.set(code, await converter.precision_of(code.upper()))

    def as_dict(self) -> dict[str, int]:
        return dict(self._table)


def _round_half_up(value: Fraction) -> int:
    sign = -1 if value < 0 else 1
    return sign * int(abs(value) + Fraction(1, 2))


def _to_fraction(factor: Factor) -> Fraction:
    if isinstance(factor, Fraction):
        return factor
    if isinstance(factor, str):
        return Fraction(Decimal(factor))
    return Fraction(factor)


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(
        self,
        default_currency: str = "USD",
        default_locale: str = DEFAULT_LOCALE,
        precision: CurrencyPrecision | None = None,
    ) -> None:
        self.precision = precision or CurrencyPrecision()
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def _check_same_currency(self, *money_objects: Money) -> None:
        first = money_objects[0].currency.code
        for money in money_objects[1:]:
            if money.currency.code != first:
                raise CurrencyMismatchError(first, money.currency.code)

    # ------------------------------------------------------------------
    # Construction and conversion
    # ------------------------------------------------------------------

    def validate_currency(self, currency_code: str) -> str:
        """Normalised ISO 4217 code; raises ValueError for unknown codes."""
        return self._validate_currency(currency_code).code

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return self.precision.of(currency_code)

    def money_from_minor_units(self, minor_units: int, currency: str | None = None) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated = self._validate_currency(currency or self.default_currency.code)
        digits = self.get_currency_precision(validated.code)
        amount = Decimal(int(minor_units)).scaleb(-digits)
        return Money(amount=amount, currency=validated)

    def money_to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units, rounding half-up if it carries extra digits."""
        digits = self.get_currency_precision(money.currency.code)
        scaled = money.amount.scaleb(digits)
        return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))

    def create_money(
        self, amount: int | Decimal | str, currency: str | None = None
    ) -> Money:
        """Create Money from a major-unit amount, rounded to currency precision."""
        validated = self._validate_currency(currency or self.default_currency.code)
        return self.round_money(Money(amount=Decimal(str(amount)), currency=validated))

    def zero(self, currency: str | None = None) -> Money:
        return self.money_from_minor_units(0, currency)

    def round_money(self, money: Money) -> Money:
        """Round Money to proper currency precision (half-up)."""
        return self.money_from_minor_units(self.money_to_minor_units(money), money.currency.code)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def add_money(self, *money_objects: Money) -> Money:
        """Add Money objects of one currency."""
        if not money_objects:
            return self.zero()
        self._check_same_currency(*money_objects)
        total = sum(self.money_to_minor_units(m) for m in money_objects)
        return self.money_from_minor_units(total, money_objects[0].currency.code)

    def subtract_money(self, left: Money, right: Money) -> Money:
        self._check_same_currency(left, right)
        return self.money_from_minor_units(
            self.money_to_minor_units(left) - self.money_to_minor_units(right),
            left.currency.code,
        )

    def multiply_money(self, money: Money, factor: Factor) -> Money:
        """Multiply by an exact rational factor, rounding half-up to minor units."""
        minor = Fraction(self.money_to_minor_units(money)) * _to_fraction(factor)
        return self.money_from_minor_units(_round_half_up(minor), money.currency.code)

    def percentage_of(self, money: Money, percent: Factor) -> Money:
        """``percent`` percent of ``money`` (10 -> 10%)."""
        return self.multiply_money(money, _to_fraction(percent) / 100)

    def negate(self, money: Money) -> Money:
        return self.money_from_minor_units(-self.money_to_minor_units(money), money.currency.code)

    def compare(self, left: Money, right: Money) -> int:
        """-1, 0 or 1 as ``left`` is less than, equal to or greater than ``right``."""
        self._check_same_currency(left, right)
        a, b = self.money_to_minor_units(left), self.money_to_minor_units(right)
        return (a > b) - (a < b)

    def min_money(self, left: Money, right: Money) -> Money:
        return left if self.compare(left, right) <= 0 else right

    def max_money(self, left: Money, right: Money) -> Money:
        return left if self.compare(left, right) >= 0 else right

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def to_dict(self, money: Money) -> dict[str, Any]:
        """Convert Money to dictionary for serialization."""
        return {
            "amount": str(money.amount),
            "currency": money.currency.code,
            "minor_units": self.money_to_minor_units(money),
        }

    def from_dict(self, data: dict[str, Any]) -> Money:
        """Create Money from dictionary."""
        if "minor_units" in data:
            return self.money_from_minor_units(data["minor_units"], data["currency"])
        return self.create_money(amount=data["amount"], currency=data["currency"])


# Global instance for convenience
money_handler = MoneyHandler()


def create_money(amount: int | Decimal | str, currency: str = "USD") -> Money:
    """Create Money object with default handler."""
    return money_handler.create_money(amount, currency)


def format_money(money: Money, locale: str | None = None, **kwargs: Any) -> str:
    """Format Money with default handler."""
    return money_handler.format_money(money, locale, **kwargs)


def add_money(*money_objects: Money) -> Money:
    """Add Money objects with default handler."""
    return money_handler.add_money(*money_objects)


def multiply_money(money: Money, multiplier: Factor) -> Money:
    """Multiply Money with default handler."""
    return money_handler.multiply_money(money, multiplier)


__all__ = [
    "CurrencyPrecision",
    "MoneyHandler",
    "money_handler",
    "create_money",
    "format_money",
    "add_money",
    "multiply_money",
    "USD",
    "EUR",
    "GBP",
    "JPY",
]
