"""
Interfaces of the external collaborators the billing engine calls.

Implementations live outside the engine; they never mutate engine state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from moneyed import Money


class PaymentStatus(str, Enum):
    """Processor-side status of a charge."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge call. A decline is ``success=False``, not an exception."""

    success: bool
    charge_ref: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class ProcessorRefundResult:
    """Outcome of a refund call."""

    success: bool
    refund_ref: str | None = None
    failure_reason: str | None = None


@runtime_checkable
class PaymentProcessor(Protocol):
    async def charge(
        self, user_id: str, amount: Money, idempotency_key: str | None = None
    ) -> ChargeResult: ...

    async def refund(self, charge_ref: str, amount: Money) -> ProcessorRefundResult: ...

    async def get_payment_status(self, charge_ref: str) -> PaymentStatus: ...


@runtime_checkable
class CurrencyConverter(Protocol):
    async def convert(self, amount: Money, from_currency: str, to_currency: str) -> Money: ...

    async def precision_of(self, currency: str) -> int: ...


@runtime_checkable
class NotificationSink(Protocol):
    async def publish(self, event: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class CallerIdentity:
    """Already-authenticated caller handed to every engine entry point."""

    user_id: str
    is_admin: bool = False
    permissions: frozenset[str] = field(default_factory=frozenset)

    def can(self, permission: str) -> bool:
        return self.is_admin or permission in self.permissions


__all__ = [
    "CallerIdentity",
    "ChargeResult",
    "CurrencyConverter",
    "NotificationSink",
    "PaymentProcessor",
    "PaymentStatus",
    "ProcessorRefundResult",
]
