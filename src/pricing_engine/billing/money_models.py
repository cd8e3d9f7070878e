"""
Money-aware Pydantic models using py-moneyed for accurate currency handling.
"""

from typing import Any

from moneyed import Money
from pydantic import BaseModel, ConfigDict, Field

from .money_utils import MoneyHandler, format_money, money_handler


class MoneyField(BaseModel):
    """Pydantic-compatible Money field for serialization."""

    model_config = ConfigDict(frozen=True)

    amount: str = Field(description="Amount as string for precision")
    currency: str = Field(description="ISO 4217 currency code")
    minor_units: int = Field(description="Amount in minor units (cents, etc.)")

    @classmethod
    def from_money(cls, money: Money, handler: MoneyHandler | None = None) -> "MoneyField":
        """Create MoneyField from Money object."""
        handler = handler or money_handler
        return cls(
            amount=str(money.amount),
            currency=money.currency.code,
            minor_units=handler.money_to_minor_units(money),
        )

    @classmethod
    def from_minor_units(
        cls, minor_units: int, currency: str, handler: MoneyHandler | None = None
    ) -> "MoneyField":
        handler = handler or money_handler
        return cls.from_money(handler.money_from_minor_units(minor_units, currency), handler)

    def to_money(self, handler: MoneyHandler | None = None) -> Money:
        """Convert back to Money object."""
        return (handler or money_handler).money_from_minor_units(self.minor_units, self.currency)

    def format(self, locale: str = "en_US", **kwargs: Any) -> str:
        """Format money with locale."""
        return format_money(self.to_money(), locale, **kwargs)


__all__ = ["MoneyField"]
