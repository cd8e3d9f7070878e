"""
Subscription lifecycle: state machine, claims and the engine service.
"""

from pricing_engine.billing.subscriptions.models import (
    LedgerEntry,
    LedgerEventType,
    Operation,
    RefundResult,
    RefundType,
    ReservationStatus,
    Subscription,
    SubscriptionResult,
    SubscriptionStatus,
)
from pricing_engine.billing.subscriptions.service import SubscriptionService
from pricing_engine.billing.subscriptions.state_machine import (
    allowed_operations,
    can_transition,
    ensure_transition,
)

__all__ = [
    "LedgerEntry",
    "LedgerEventType",
    "Operation",
    "RefundResult",
    "RefundType",
    "ReservationStatus",
    "Subscription",
    "SubscriptionResult",
    "SubscriptionService",
    "SubscriptionStatus",
    "allowed_operations",
    "can_transition",
    "ensure_transition",
]
