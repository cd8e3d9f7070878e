"""
Proration calculator and billing period arithmetic.

The remaining share of a cycle is an exact ``Fraction`` of microseconds; money
is only rounded when the share is applied to a price.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction

from dateutil.relativedelta import relativedelta
from moneyed import Money

from pricing_engine.billing.catalog.models import BillingPeriod
from pricing_engine.billing.exceptions import CurrencyMismatchError
from pricing_engine.billing.money_utils import MoneyHandler, money_handler

_PERIOD_DELTAS: dict[BillingPeriod, relativedelta] = {
    BillingPeriod.MONTHLY: relativedelta(months=1),
    BillingPeriod.QUARTERLY: relativedelta(months=3),
    BillingPeriod.YEARLY: relativedelta(years=1),
    BillingPeriod.LIFETIME: relativedelta(years=100),
}

_MICROSECOND = timedelta(microseconds=1)


def add_billing_period(start: datetime, period: BillingPeriod | str, cycles: int = 1) -> datetime:
    """End of ``cycles`` billing periods starting at ``start``.

    Month arithmetic clamps to the last day of shorter months.
    """
    return start + _PERIOD_DELTAS[BillingPeriod(period)] * cycles


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a mid-cycle plan change."""

    remaining_fraction: Fraction
    unused_credit: Money
    new_charge: Money
    net_delta: Money
    effective_next_cycle: bool

    @property
    def is_charge(self) -> bool:
        return self.net_delta.amount > 0

    @property
    def is_credit(self) -> bool:
        return self.net_delta.amount < 0


class ProrationCalculator:
    """Compute prorated plan change deltas and prorated refunds."""

    def __init__(self, money: MoneyHandler | None = None) -> None:
        self.money = money or money_handler

    @staticmethod
    def remaining_fraction(cycle_start: datetime, cycle_end: datetime, now: datetime) -> Fraction:
        """Unused share of the cycle, clamped to [0, 1]."""
        total = (cycle_end - cycle_start) // _MICROSECOND
        if total <= 0:
            return Fraction(0)
        remaining = (cycle_end - now) // _MICROSECOND
        fraction = Fraction(remaining, total)
        return min(max(fraction, Fraction(0)), Fraction(1))

    def calculate(
        self,
        current_price: Money,
        target_price: Money,
        cycle_start: datetime,
        cycle_end: datetime,
        now: datetime,
    ) -> ProrationResult:
        """
        Prorate a switch from ``current_price`` to ``target_price`` at ``now``.

        A positive net delta is owed by the customer, a negative one is owed to
        them. At or after the cycle end nothing is prorated and the change
        belongs to the next cycle.
        """
        if current_price.currency.code != target_price.currency.code:
            raise CurrencyMismatchError(current_price.currency.code, target_price.currency.code)

        currency = current_price.currency.code
        if now >= cycle_end:
            zero = self.money.zero(currency)
            return ProrationResult(
                remaining_fraction=Fraction(0),
                unused_credit=zero,
                new_charge=zero,
                net_delta=zero,
                effective_next_cycle=True,
            )

        fraction = self.remaining_fraction(cycle_start, cycle_end, now)
        unused_credit = self.money.multiply_money(current_price, fraction)
        new_charge = self.money.multiply_money(target_price, fraction)

        return ProrationResult(
            remaining_fraction=fraction,
            unused_credit=unused_credit,
            new_charge=new_charge,
            net_delta=self.money.subtract_money(new_charge, unused_credit),
            effective_next_cycle=False,
        )

    def prorated_refund(
        self, amount: Money, cycle_start: datetime, cycle_end: datetime, now: datetime
    ) -> Money:
        """Share of ``amount`` covering the unused part of the cycle."""
        return self.money.multiply_money(
            amount, self.remaining_fraction(cycle_start, cycle_end, now)
        )


__all__ = ["ProrationCalculator", "ProrationResult", "add_billing_period"]
