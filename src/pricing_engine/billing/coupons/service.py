"""
Coupon engine.

Validation runs checks in a fixed order so callers always see the most
fundamental problem first. Redemption is a single conditional UPDATE on the
usage counter, so concurrent redemptions can never push ``used_count`` past
``usage_limit``.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

import structlog
from moneyed import Money
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricing_engine.billing.catalog.models import BillingPeriod, Plan
from pricing_engine.billing.coupons.models import (
    Coupon,
    CouponCreateRequest,
    CouponRedemption,
    CouponUpdateRequest,
    CouponValidation,
    DiscountType,
)
from pricing_engine.billing.exceptions import (
    CouponExhaustedError,
    CouponExpiredError,
    CouponInvalidError,
    CouponNotApplicableError,
    CouponNotFoundError,
    CouponNotYetValidError,
    CouponUserLimitReachedError,
)
from pricing_engine.billing.models import BillingCouponRedemptionTable, BillingCouponTable
from pricing_engine.billing.money_utils import MoneyHandler, money_handler

logger = structlog.get_logger(__name__)


class CouponService:
    """Validate, redeem and administer discount coupons."""

    def __init__(
        self,
        db: AsyncSession,
        money: MoneyHandler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.money = money or money_handler
        self.clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_coupon_by_code(self, code: str, active_only: bool = True) -> Coupon:
        """Find a coupon by code, case-insensitively."""
        normalized = code.strip().upper()
        stmt = select(BillingCouponTable).where(BillingCouponTable.code == normalized)
        if active_only:
            stmt = stmt.where(BillingCouponTable.is_active.is_(True))
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise CouponNotFoundError(normalized)
        return Coupon.model_validate(row)

    async def get_coupon(self, coupon_id: str) -> Coupon | None:
        row = await self.db.get(BillingCouponTable, coupon_id)
        return Coupon.model_validate(row) if row else None

    async def user_redemption_count(self, coupon_id: str, user_id: str) -> int:
        stmt = select(func.count()).where(
            BillingCouponRedemptionTable.coupon_id == coupon_id,
            BillingCouponRedemptionTable.user_id == user_id,
        )
        return (await self.db.execute(stmt)).scalar_one()

    async def list_redemptions(self, code: str) -> list[CouponRedemption]:
        coupon = await self.get_coupon_by_code(code, active_only=False)
        stmt = (
            select(BillingCouponRedemptionTable)
            .where(BillingCouponRedemptionTable.coupon_id == coupon.coupon_id)
            .order_by(BillingCouponRedemptionTable.redeemed_at)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        return [CouponRedemption.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Discount math
    # ------------------------------------------------------------------

    def compute_discount(self, coupon: Coupon, price: Money) -> Money:
        """
        Discount a coupon grants on a price.

        Percentage discounts round half-up to the currency's minor unit; fixed
        amounts are capped at the price.
        """
        if coupon.discount_type == DiscountType.PERCENTAGE:
            discount = self.money.percentage_of(price, coupon.value)
        else:
            discount = self.money.money_from_minor_units(int(coupon.value), price.currency.code)
        return self.money.min_money(discount, price)

    # ------------------------------------------------------------------
    # Validation and redemption
    # ------------------------------------------------------------------

    async def validate(
        self,
        code: str,
        user_id: str,
        plan: Plan,
        period: BillingPeriod | str,
        price: Money,
        at: datetime | None = None,
    ) -> CouponValidation:
        """
        Validate a coupon for a user, plan, period and price.

        Raises, in order of precedence:
            CouponNotFoundError: Unknown or inactive code
            CouponExpiredError / CouponNotYetValidError: Outside the validity window
            CouponExhaustedError: Global usage limit reached
            CouponUserLimitReachedError: Per-user limit reached
            CouponNotApplicableError: Plan, period or currency restriction
        """
        at = at or self.clock()
        coupon = await self.get_coupon_by_code(code)

        if coupon.is_expired(at):
            raise CouponExpiredError(coupon.code)
        if coupon.is_not_yet_valid(at):
            raise CouponNotYetValidError(coupon.code)
        if coupon.is_exhausted:
            raise CouponExhaustedError(coupon.code)
        if coupon.per_user_limit is not None:
            used = await self.user_redemption_count(coupon.coupon_id, user_id)
            if used >= coupon.per_user_limit:
                raise CouponUserLimitReachedError(coupon.code, user_id)

        period_value = BillingPeriod(period).value
        if not coupon.applies_to(plan, period):
            raise CouponNotApplicableError(coupon.code, plan.plan_id, period_value)
        if (
            coupon.discount_type == DiscountType.FIXED_AMOUNT
            and coupon.currency != price.currency.code
        ):
            raise CouponNotApplicableError(coupon.code, plan.plan_id, period_value)

        discount = self.compute_discount(coupon, price)
        return CouponValidation(
            coupon=coupon,
            price=price,
            discount=discount,
            final_price=self.money.subtract_money(price, discount),
        )

    async def apply(
        self,
        code: str,
        user_id: str,
        subscription_id: str | None,
        plan: Plan,
        period: BillingPeriod | str,
        price: Money,
        at: datetime | None = None,
    ) -> CouponValidation:
        """
        Redeem a coupon inside the caller's transaction.

        The usage counter is incremented with a conditional UPDATE; when no row
        matches, the limit was reached by a concurrent redemption.
        """
        at = at or self.clock()
        validation = await self.validate(code, user_id, plan, period, price, at)
        coupon = validation.coupon

        stmt = (
            update(BillingCouponTable)
            .where(
                BillingCouponTable.coupon_id == coupon.coupon_id,
                BillingCouponTable.is_active.is_(True),
                or_(
                    BillingCouponTable.usage_limit.is_(None),
                    BillingCouponTable.used_count < BillingCouponTable.usage_limit,
                ),
            )
            .values(used_count=BillingCouponTable.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.info("coupon.exhausted_on_apply", code=coupon.code, user_id=user_id)
            raise CouponExhaustedError(coupon.code)

        self.db.add(
            BillingCouponRedemptionTable(
                redemption_id=f"red_{uuid4().hex[:12]}",
                coupon_id=coupon.coupon_id,
                user_id=user_id,
                subscription_id=subscription_id,
                discount_minor=self.money.money_to_minor_units(validation.discount),
                currency=price.currency.code,
                redeemed_at=at,
            )
        )
        await self.db.flush()

        logger.info(
            "coupon.redeemed",
            code=coupon.code,
            user_id=user_id,
            subscription_id=subscription_id,
            discount=str(validation.discount.amount),
            currency=price.currency.code,
        )
        return validation

    async def discount_for_renewal(
        self, coupon_id: str | None, price: Money, first_payment: bool = False
    ) -> Money:
        """
        Discount for a renewal charge.

        A coupon redeemed during a trial discounts the first real payment.
        After that only recurring coupons keep discounting, while active.
        """
        zero = self.money.zero(price.currency.code)
        if coupon_id is None:
            return zero
        coupon = await self.get_coupon(coupon_id)
        if coupon is None or not coupon.is_active:
            return zero
        if coupon.first_payment_only and not first_payment:
            return zero
        if coupon.discount_type == DiscountType.FIXED_AMOUNT and coupon.currency != price.currency.code:
            return zero
        return self.compute_discount(coupon, price)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_coupon(self, request: CouponCreateRequest) -> Coupon:
        existing = select(func.count()).where(BillingCouponTable.code == request.code)
        if (await self.db.execute(existing)).scalar_one() > 0:
            raise CouponInvalidError(
                f"Coupon code {request.code} already exists",
                request.code,
                "COUPON_CODE_TAKEN",
                recovery_hint="Choose a different code",
            )

        currency = self.money.validate_currency(request.currency) if request.currency else None
        row = BillingCouponTable(
            coupon_id=f"cpn_{uuid4().hex[:12]}",
            code=request.code,
            discount_type=request.discount_type.value,
            value=request.value,
            currency=currency,
            applies_to_plans=request.applies_to_plans,
            applies_to_periods=[p.value for p in request.applies_to_periods],
            usage_limit=request.usage_limit,
            per_user_limit=request.per_user_limit,
            used_count=0,
            starts_at=request.starts_at,
            expires_at=request.expires_at,
            first_payment_only=request.first_payment_only,
            is_active=True,
            metadata_json=request.metadata,
        )
        self.db.add(row)
        await self.db.flush()

        logger.info("coupon.created", code=row.code, coupon_id=row.coupon_id)
        return Coupon.model_validate(row)

    async def list_coupons(self, active_only: bool = False) -> list[Coupon]:
        stmt = select(BillingCouponTable).order_by(BillingCouponTable.code)
        if active_only:
            stmt = stmt.where(BillingCouponTable.is_active.is_(True))
        rows = (await self.db.execute(stmt)).scalars().all()
        return [Coupon.model_validate(r) for r in rows]

    async def update_coupon(self, code: str, request: CouponUpdateRequest) -> Coupon:
        """
        Change limits, validity window or restrictions of a coupon.

        A usage limit below the redemptions already made is rejected, as is a
        window that ends before it starts.
        """
        row = await self._get_row(code)
        changes = request.model_dump(exclude_unset=True)

        usage_limit = changes.get("usage_limit", row.usage_limit)
        if usage_limit is not None and usage_limit < row.used_count:
            raise CouponInvalidError(
                f"Usage limit {usage_limit} is below the {row.used_count} redemptions made",
                row.code,
                "COUPON_LIMIT_BELOW_USAGE",
                recovery_hint="Raise the limit or deactivate the coupon",
                used_count=row.used_count,
            )
        starts_at = changes.get("starts_at", row.starts_at)
        expires_at = changes.get("expires_at", row.expires_at)
        if starts_at and expires_at and expires_at <= starts_at:
            raise CouponInvalidError(
                "expires_at must be after starts_at", row.code, "COUPON_INVALID_WINDOW"
            )

        if "applies_to_periods" in changes:
            changes["applies_to_periods"] = [
                BillingPeriod(p).value for p in changes["applies_to_periods"] or []
            ]
        if "applies_to_plans" in changes:
            changes["applies_to_plans"] = changes["applies_to_plans"] or []
        if "metadata" in changes:
            changes["metadata_json"] = changes.pop("metadata") or {}
        for field, value in changes.items():
            setattr(row, field, value)
        await self.db.flush()

        logger.info("coupon.updated", code=row.code, fields=sorted(changes))
        return Coupon.model_validate(row)

    async def deactivate_coupon(self, code: str) -> Coupon:
        return await self._set_active(code, False)

    async def activate_coupon(self, code: str) -> Coupon:
        return await self._set_active(code, True)

    async def _set_active(self, code: str, active: bool) -> Coupon:
        row = await self._get_row(code)
        row.is_active = active
        await self.db.flush()
        logger.info("coupon.active_changed", code=row.code, is_active=active)
        return Coupon.model_validate(row)

    async def _get_row(self, code: str) -> BillingCouponTable:
        normalized = code.strip().upper()
        stmt = select(BillingCouponTable).where(BillingCouponTable.code == normalized)
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise CouponNotFoundError(normalized)
        return row


__all__ = ["CouponService"]
