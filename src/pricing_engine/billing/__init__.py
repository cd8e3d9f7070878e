"""
Billing system module.

Provides billing capabilities including:
- Plan catalog with versioned prices, features and limits
- Coupon validation and redemption
- Proration
- Subscription lifecycle and ledger
- Renewal scheduling and charge reconciliation

Services are imported from their sub-modules; this package only re-exports the
error hierarchy and configuration so importing it stays cheap.
"""

from pricing_engine.billing.config import BillingConfig, get_billing_config, set_billing_config
from pricing_engine.billing.exceptions import (
    BillingError,
    BillingIntegrityError,
    ConcurrentModificationError,
    InvalidTransitionError,
    PaymentFailedError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)

__all__ = [
    "BillingConfig",
    "BillingError",
    "BillingIntegrityError",
    "ConcurrentModificationError",
    "InvalidTransitionError",
    "PaymentFailedError",
    "PlanNotFoundError",
    "SubscriptionNotFoundError",
    "ValidationError",
    "get_billing_config",
    "set_billing_config",
]
