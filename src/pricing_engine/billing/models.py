"""
Billing database tables.

Money is stored as integer minor units next to an ISO 4217 currency code.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pricing_engine.db import Base, TimestampMixin, UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingSQLModel(TimestampMixin, Base):
    """Base SQLAlchemy model for billing tables."""

    __abstract__ = True

    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )


# ============================================================================
# Plan catalog
# ============================================================================


class BillingPlanTable(BillingSQLModel):
    """SQLAlchemy table for pricing plans."""

    __tablename__ = "billing_plans"

    plan_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    is_recommended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billing_periods: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (Index("ix_billing_plans_status_sort", "status", "sort_order"),)


class BillingPlanPriceTable(BillingSQLModel):
    """Versioned plan prices keyed by (currency, billing period)."""

    __tablename__ = "billing_plan_prices"

    price_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_plans.plan_id", ondelete="CASCADE"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    compare_at_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    setup_fee_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Closed versions keep effective_until; the open version has it NULL
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    effective_from: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    effective_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_billing_plan_prices_lookup", "plan_id", "currency", "billing_period"),
        UniqueConstraint(
            "plan_id", "currency", "billing_period", "version", name="uq_billing_plan_price_version"
        ),
    )


class BillingPlanFeatureTable(BillingSQLModel):
    """Feature entries displayed on a plan."""

    __tablename__ = "billing_plan_features"

    feature_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_plans.plan_id", ondelete="CASCADE"), nullable=False
    )
    feature_key: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feature_type: Mapped[str] = mapped_column(String(20), nullable=False, default="boolean")
    is_highlighted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_billing_plan_features_plan_key", "plan_id", "feature_key"),)


class BillingPlanLimitTable(BillingSQLModel):
    """Numeric usage limits; a NULL limit means unlimited."""

    __tablename__ = "billing_plan_limits"

    limit_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    plan_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_plans.plan_id", ondelete="CASCADE"), nullable=False
    )
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    limit_value: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (UniqueConstraint("plan_id", "resource", name="uq_billing_plan_limit"),)


class BillingCatalogSettingsTable(BillingSQLModel):
    """Single-row catalog settings holding the default plan reference."""

    __tablename__ = "billing_catalog_settings"

    settings_id: Mapped[str] = mapped_column(String(50), primary_key=True, default="catalog")
    default_plan_id: Mapped[str | None] = mapped_column(
        String(50), ForeignKey("billing_plans.plan_id", ondelete="SET NULL"), nullable=True
    )


# ============================================================================
# Coupons
# ============================================================================


class BillingCouponTable(BillingSQLModel):
    """SQLAlchemy table for discount coupons."""

    __tablename__ = "billing_coupons"

    coupon_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    # percentage: value in percent points; fixed_amount: value in minor units
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    applies_to_plans: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    applies_to_periods: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    per_user_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    first_payment_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_billing_coupons_active_expires", "is_active", "expires_at"),)


class BillingCouponRedemptionTable(Base):
    """One row per successful coupon redemption."""

    __tablename__ = "billing_coupon_redemptions"

    redemption_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    coupon_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("billing_coupons.coupon_id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (Index("ix_billing_coupon_redemptions_user", "coupon_id", "user_id"),)


# ============================================================================
# Subscriptions and ledger
# ============================================================================


class BillingSubscriptionTable(BillingSQLModel):
    """SQLAlchemy table for customer subscriptions."""

    __tablename__ = "billing_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)

    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    pending_plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resume_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    coupon_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Agreed price snapshot and cycle money
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credit_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cycle_charged_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cycle_refunded_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_charge_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Dunning
    renewal_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Claim held while an operation or the scheduler works on the row
    lock_token: Mapped[str | None] = mapped_column(String(50), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_billing_subscriptions_user_status", "user_id", "status"),
        Index("ix_billing_subscriptions_status_ends", "status", "ends_at"),
        Index("ix_billing_subscriptions_status_retry", "status", "next_retry_at"),
    )


class BillingLedgerEntryTable(Base):
    """Append-only billing ledger."""

    __tablename__ = "billing_ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    subscription_id: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("billing_subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )

    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    delta_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    charged_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    charge_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status_before: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status_after: Mapped[str] = mapped_column(String(20), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_billing_ledger_subscription", "subscription_id", "id"),
        Index("ix_billing_ledger_type", "event_type"),
    )


class BillingChargeReservationTable(BillingSQLModel):
    """Charge reserved before calling the processor, closed after commit."""

    __tablename__ = "billing_charge_reservations"

    reservation_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # reserved, charged, committed, failed, unknown
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="reserved")
    charge_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_billing_reservations_status_created", "status", "created_at"),
        Index("ix_billing_reservations_subscription", "subscription_id"),
    )


__all__ = [
    "BillingSQLModel",
    "BillingPlanTable",
    "BillingPlanPriceTable",
    "BillingPlanFeatureTable",
    "BillingPlanLimitTable",
    "BillingCatalogSettingsTable",
    "BillingCouponTable",
    "BillingCouponRedemptionTable",
    "BillingSubscriptionTable",
    "BillingLedgerEntryTable",
    "BillingChargeReservationTable",
]
