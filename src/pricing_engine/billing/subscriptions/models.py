"""
Subscription domain models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from moneyed import Money
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from pricing_engine.billing.catalog.models import BillingPeriod
from pricing_engine.billing.events import DomainEvent
from pricing_engine.billing.money_models import MoneyField


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class Operation(str, Enum):
    """Operations the state machine accepts."""

    CREATE = "create"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    RENEW = "renew"
    EXTEND = "extend"
    REFUND = "refund"


class LedgerEventType(str, Enum):
    """Ledger entry types."""

    CREATED = "created"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    RENEWED = "renewed"
    RENEWAL_FAILED = "renewal_failed"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXTENDED = "extended"
    EXPIRED = "expired"


class RefundType(str, Enum):
    """How a refund amount is determined."""

    FULL = "full"
    PRORATED = "prorated"
    PARTIAL = "partial"


class ReservationStatus(str, Enum):
    """Charge reservation status."""

    RESERVED = "reserved"
    CHARGED = "charged"
    COMMITTED = "committed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class Subscription(BaseModel):
    """Customer subscription."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    user_id: str
    plan_id: str
    pending_plan_id: str | None = None
    billing_period: BillingPeriod
    currency: str
    status: SubscriptionStatus

    trial_ends_at: datetime | None = None
    starts_at: datetime
    ends_at: datetime
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    paused_at: datetime | None = None
    resume_at: datetime | None = None

    coupon_id: str | None = None

    price_minor: int
    credit_minor: int = 0
    cycle_charged_minor: int = 0
    cycle_refunded_minor: int = 0
    last_charge_ref: str | None = None

    renewal_attempts: int = 0
    next_retry_at: datetime | None = None

    version: int = 1
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def refundable_minor(self) -> int:
        return max(self.cycle_charged_minor - self.cycle_refunded_minor, 0)

    def is_in_trial(self, now: datetime) -> bool:
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_ends_at is not None
            and now < self.trial_ends_at
        )

    def has_access(self, now: datetime) -> bool:
        """Whether plan features are available to the user at ``now``."""
        if self.status in (
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        ):
            return True
        return self.status == SubscriptionStatus.CANCELLED and now < self.ends_at

    def days_remaining(self, now: datetime) -> int:
        if now >= self.ends_at:
            return 0
        return (self.ends_at - now).days


class LedgerEntry(BaseModel):
    """Immutable billing ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    entry_id: str
    subscription_id: str
    event_type: LedgerEventType
    delta_minor: int
    charged_minor: int = 0
    currency: str
    charge_ref: str | None = None
    status_before: SubscriptionStatus | None = None
    status_after: SubscriptionStatus
    plan_id: str
    reason: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    created_at: datetime


class ChargeReservation(BaseModel):
    """Money movement recorded before the processor is called."""

    model_config = ConfigDict(from_attributes=True)

    reservation_id: str
    subscription_id: str
    user_id: str
    operation: Operation
    amount_minor: int
    currency: str
    status: ReservationStatus
    charge_ref: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


@dataclass
class SubscriptionResult:
    """Outcome of a state-changing engine call."""

    subscription: Subscription
    ledger_entry: LedgerEntry
    events: list[DomainEvent] = field(default_factory=list)


@dataclass
class RefundResult(SubscriptionResult):
    """Outcome of a refund."""

    refunded: Money | None = None
    refund_ref: str | None = None
    cancelled: bool = False


# ============================================================================
# API request/response schemas
# ============================================================================


class SubscriptionCreateRequest(BaseModel):
    """Request model for creating subscriptions."""

    plan_id: str
    billing_period: BillingPeriod
    coupon_code: str | None = None
    currency: str | None = Field(None, min_length=3, max_length=3)
    user_id: str | None = Field(None, description="Admin only: subscribe on behalf of a user")
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlanChangeRequest(BaseModel):
    """Request model for upgrades and downgrades."""

    plan_id: str
    prorate: bool = True


class PauseRequest(BaseModel):
    resume_at: datetime | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)
    immediate: bool = False


class ExtendRequest(BaseModel):
    days: int = Field(gt=0, le=3650)
    reason: str | None = Field(None, max_length=255)


class RefundRequest(BaseModel):
    """Request model for refunds."""

    refund_type: RefundType = RefundType.FULL
    amount_minor: int | None = Field(None, gt=0)
    reason: str | None = Field(None, max_length=255)
    cancel: bool | None = None

    @model_validator(mode="after")
    def partial_needs_amount(self) -> "RefundRequest":
        if self.refund_type == RefundType.PARTIAL and self.amount_minor is None:
            raise ValueError("Partial refunds require amount_minor")
        return self


class CouponValidationRequest(BaseModel):
    code: str
    plan_id: str
    billing_period: BillingPeriod
    currency: str | None = None


class CouponValidationResponse(BaseModel):
    code: str
    price: MoneyField
    discount: MoneyField
    final_price: MoneyField


class SubscriptionResponse(BaseModel):
    """Subscription with the ledger entry written by the call."""

    subscription: Subscription
    ledger_entry: LedgerEntry | None = None
    refunded: MoneyField | None = None


__all__ = [
    "CancelRequest",
    "ChargeReservation",
    "CouponValidationRequest",
    "CouponValidationResponse",
    "ExtendRequest",
    "LedgerEntry",
    "LedgerEventType",
    "Operation",
    "PauseRequest",
    "PlanChangeRequest",
    "RefundRequest",
    "RefundResult",
    "RefundType",
    "ReservationStatus",
    "Subscription",
    "SubscriptionCreateRequest",
    "SubscriptionResponse",
    "SubscriptionResult",
    "SubscriptionStatus",
]
