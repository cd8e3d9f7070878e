"""
Coupon models.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from moneyed import Money
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pricing_engine.billing.catalog.models import BillingPeriod, Plan


class DiscountType(str, Enum):
    """Coupon discount type."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Coupon(BaseModel):
    """Discount coupon."""

    model_config = ConfigDict(from_attributes=True)

    coupon_id: str
    code: str
    discount_type: DiscountType
    value: Decimal
    currency: str | None = None

    applies_to_plans: list[str] = Field(default_factory=list)
    applies_to_periods: list[BillingPeriod] = Field(default_factory=list)

    usage_limit: int | None = None
    per_user_limit: int | None = None
    used_count: int = 0

    starts_at: datetime | None = None
    expires_at: datetime | None = None

    first_payment_only: bool = False
    is_active: bool = True

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit

    @property
    def remaining_uses(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(self.usage_limit - self.used_count, 0)

    def is_expired(self, at: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < at

    def is_not_yet_valid(self, at: datetime) -> bool:
        return self.starts_at is not None and self.starts_at > at

    def applies_to(self, plan: Plan, period: BillingPeriod | str) -> bool:
        """Plan restriction matches plan ids or slugs; empty lists mean no restriction."""
        if self.applies_to_plans and not (
            plan.plan_id in self.applies_to_plans or plan.slug in self.applies_to_plans
        ):
            return False
        if self.applies_to_periods and BillingPeriod(period) not in self.applies_to_periods:
            return False
        return True


@dataclass(frozen=True)
class CouponValidation:
    """Result of validating a coupon against a price."""

    coupon: Coupon
    price: Money
    discount: Money
    final_price: Money


class CouponRedemption(BaseModel):
    """A recorded coupon redemption."""

    model_config = ConfigDict(from_attributes=True)

    redemption_id: str
    coupon_id: str
    user_id: str
    subscription_id: str | None = None
    discount_minor: int
    currency: str
    redeemed_at: datetime


class CouponCreateRequest(BaseModel):
    """Request model for creating a coupon."""

    code: str = Field(min_length=1, max_length=50)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    value: Decimal = Field(gt=0, description="Percent points, or minor units for fixed amounts")
    currency: str | None = Field(None, min_length=3, max_length=3)

    applies_to_plans: list[str] = Field(default_factory=list)
    applies_to_periods: list[BillingPeriod] = Field(default_factory=list)

    usage_limit: int | None = Field(None, ge=0)
    per_user_limit: int | None = Field(1, ge=1)

    starts_at: datetime | None = None
    expires_at: datetime | None = None
    first_payment_only: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v

    @model_validator(mode="after")
    def check_discount(self) -> "CouponCreateRequest":
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        if self.discount_type == DiscountType.FIXED_AMOUNT:
            if self.currency is None:
                raise ValueError("Fixed amount coupons require a currency")
            if self.value != self.value.to_integral_value():
                raise ValueError("Fixed amount coupons are expressed in whole minor units")
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class CouponUpdateRequest(BaseModel):
    """
    Request model for changing a coupon's limits, window or restrictions.

    The discount itself is fixed once created. Unset fields are left unchanged.
    """

    applies_to_plans: list[str] | None = None
    applies_to_periods: list[BillingPeriod] | None = None

    usage_limit: int | None = Field(None, ge=0)
    per_user_limit: int | None = Field(None, ge=1)

    starts_at: datetime | None = None
    expires_at: datetime | None = None
    first_payment_only: bool | None = None
    metadata: dict[str, Any] | None = None


__all__ = [
    "Coupon",
    "CouponCreateRequest",
    "CouponRedemption",
    "CouponUpdateRequest",
    "CouponValidation",
    "DiscountType",
]
