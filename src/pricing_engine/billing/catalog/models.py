"""
Plan catalog models.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanStatus(str, Enum):
    """Plan lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"


class BillingPeriod(str, Enum):
    """Billing period of a subscription cycle."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class FeatureType(str, Enum):
    """How a plan feature value is interpreted."""

    BOOLEAN = "boolean"
    LIMIT = "limit"
    TEXT = "text"


class PlanFeature(BaseModel):
    """Feature displayed on a plan."""

    model_config = ConfigDict(from_attributes=True)

    feature_key: str = Field(min_length=1, max_length=50)
    value: str | None = None
    feature_type: FeatureType = FeatureType.BOOLEAN
    is_highlighted: bool = False
    sort_order: int = 0

    @property
    def enabled(self) -> bool:
        if self.feature_type == FeatureType.BOOLEAN:
            return (self.value or "").lower() in {"1", "true", "yes", "enabled"}
        return self.value is not None


class PlanPrice(BaseModel):
    """One price version for a (currency, billing period) combination."""

    model_config = ConfigDict(from_attributes=True)

    price_id: str
    plan_id: str
    currency: str
    billing_period: BillingPeriod
    amount_minor: int = Field(ge=0)
    compare_at_minor: int | None = None
    setup_fee_minor: int | None = None
    version: int = 1
    effective_from: datetime | None = None
    effective_until: datetime | None = None

    def is_effective(self, at: datetime) -> bool:
        if self.effective_from is not None and self.effective_from > at:
            return False
        if self.effective_until is not None and self.effective_until <= at:
            return False
        return True

    @property
    def is_open(self) -> bool:
        return self.effective_until is None

    @property
    def is_on_sale(self) -> bool:
        return self.compare_at_minor is not None and self.compare_at_minor > self.amount_minor

    @property
    def discount_percentage(self) -> int:
        """Whole-percent saving against the compare-at amount."""
        if not self.is_on_sale or not self.compare_at_minor:
            return 0
        saving = Decimal(self.compare_at_minor - self.amount_minor) * 100
        ratio = saving / Decimal(self.compare_at_minor)
        return int(ratio.to_integral_value(rounding=ROUND_HALF_UP))


class Plan(BaseModel):
    """Pricing plan with its prices, features and limits."""

    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    slug: str
    name: str
    description: str | None = None
    status: PlanStatus
    is_recommended: bool = False
    sort_order: int = 0
    trial_days: int = Field(0, ge=0)
    billing_periods: list[BillingPeriod] = Field(default_factory=list)

    features: list[PlanFeature] = Field(default_factory=list)
    limits: dict[str, int | None] = Field(default_factory=dict)
    prices: list[PlanPrice] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == PlanStatus.ACTIVE

    @property
    def has_trial(self) -> bool:
        return self.trial_days > 0

    def supports_period(self, period: BillingPeriod | str) -> bool:
        return BillingPeriod(period) in self.billing_periods

    def get_feature(self, key: str) -> PlanFeature | None:
        return next((f for f in self.features if f.feature_key == key), None)

    def has_feature(self, key: str) -> bool:
        feature = self.get_feature(key)
        return feature is not None and feature.enabled

    def get_limit(self, resource: str) -> int | None:
        """Limit for a resource; None means unlimited, 0 means not included."""
        if resource not in self.limits:
            return 0
        return self.limits[resource]

    def is_unlimited(self, resource: str) -> bool:
        return resource in self.limits and self.limits[resource] is None


class PlanComparison(BaseModel):
    """Side-by-side feature matrix keyed by feature key then plan slug."""

    plans: list[Plan]
    features_matrix: dict[str, dict[str, str]]


class PlanAnalytics(BaseModel):
    """
    Subscriber and revenue figures for one plan.

    Recurring revenue is normalized to a month per currency, in minor units,
    from the agreed price of every paying subscription. Lifetime subscriptions
    and trials contribute nothing.
    """

    plan_id: str
    total_subscribers: int
    active_subscribers: int = Field(description="Trialing, active or past due")
    trialing_subscribers: int
    churned_last_30_days: int
    churn_rate: float = Field(description="Churned over active plus churned, 0 when empty")
    mrr_minor: dict[str, int] = Field(default_factory=dict)
    arr_minor: dict[str, int] = Field(default_factory=dict)
    generated_at: datetime


# ============================================================================
# Administrative requests
# ============================================================================


class PlanCreateRequest(BaseModel):
    """Request model for creating a plan."""

    slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    trial_days: int = Field(0, ge=0, le=365)
    billing_periods: list[BillingPeriod] = Field(min_length=1)
    sort_order: int = 0
    is_recommended: bool = False
    features: list[PlanFeature] = Field(default_factory=list)
    limits: dict[str, int | None] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("billing_periods")
    @classmethod
    def unique_periods(cls, v: list[BillingPeriod]) -> list[BillingPeriod]:
        return list(dict.fromkeys(v))


class PlanUpdateRequest(BaseModel):
    """Request model for updating a plan. Unset fields are left unchanged."""

    slug: str | None = Field(None, min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None
    trial_days: int | None = Field(None, ge=0, le=365)
    billing_periods: list[BillingPeriod] | None = Field(None, min_length=1)
    sort_order: int | None = None
    features: list[PlanFeature] | None = None
    limits: dict[str, int | None] | None = None
    metadata: dict[str, Any] | None = None


class PlanCloneRequest(BaseModel):
    slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9-]*$")


class PlanReorderRequest(BaseModel):
    """Plan ids in the new display order."""

    plan_ids: list[str] = Field(min_length=1)

    @field_validator("plan_ids")
    @classmethod
    def unique_ids(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class PriceCreateRequest(BaseModel):
    """Request model for adding or changing a plan price."""

    currency: str = Field(min_length=3, max_length=3)
    billing_period: BillingPeriod
    amount_minor: int = Field(ge=0)
    compare_at_minor: int | None = Field(None, ge=0)
    setup_fee_minor: int | None = Field(None, ge=0)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


__all__ = [
    "BillingPeriod",
    "FeatureType",
    "Plan",
    "PlanAnalytics",
    "PlanCloneRequest",
    "PlanComparison",
    "PlanCreateRequest",
    "PlanFeature",
    "PlanPrice",
    "PlanReorderRequest",
    "PlanStatus",
    "PlanUpdateRequest",
    "PriceCreateRequest",
]
