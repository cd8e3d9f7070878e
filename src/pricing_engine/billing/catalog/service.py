"""
Plan catalog service.

Read side used by the subscription engine plus the administrative operations
that maintain plans, prices, features and limits.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from fractions import Fraction
from uuid import uuid4

import structlog
from moneyed import Money
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricing_engine.billing.catalog.models import (
    BillingPeriod,
    Plan,
    PlanAnalytics,
    PlanComparison,
    PlanCreateRequest,
    PlanFeature,
    PlanPrice,
    PlanStatus,
    PlanUpdateRequest,
    PriceCreateRequest,
)
from pricing_engine.billing.exceptions import (
    NoPriceForCombinationError,
    PeriodNotSupportedError,
    PlanConfigurationError,
    PlanNotActiveError,
    PlanNotFoundError,
)
from pricing_engine.billing.models import (
    BillingCatalogSettingsTable,
    BillingLedgerEntryTable,
    BillingPlanFeatureTable,
    BillingPlanLimitTable,
    BillingPlanPriceTable,
    BillingPlanTable,
    BillingSubscriptionTable,
)
from pricing_engine.billing.money_utils import MoneyHandler, money_handler

logger = structlog.get_logger(__name__)

CATALOG_SETTINGS_ID = "catalog"
CHURN_WINDOW = timedelta(days=30)

# Subscription statuses and ledger event types as stored
_ACTIVE_STATUSES = ("trialing", "active", "past_due")
_PAYING_STATUSES = ("active", "past_due")
_CHURN_EVENTS = ("cancelled", "expired")

_MONTHS_PER_PERIOD = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.QUARTERLY: 3,
    BillingPeriod.YEARLY: 12,
}


def generate_plan_id() -> str:
    return f"plan_{uuid4().hex[:12]}"


def generate_price_id() -> str:
    return f"price_{uuid4().hex[:12]}"


def _round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


class CatalogService:
    """Manage pricing plans and answer catalog queries."""

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
    # Engine-facing queries
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> Plan:
        """Get a plan with prices, features and limits."""
        row = await self.db.get(BillingPlanTable, plan_id)
        if row is None:
            raise PlanNotFoundError(plan_id)
        return await self._load_plan(row)

    async def get_plan_by_slug(self, slug: str) -> Plan:
        stmt = select(BillingPlanTable).where(BillingPlanTable.slug == slug)
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise PlanNotFoundError(slug)
        return await self._load_plan(row)

    async def get_active_plans(self) -> list[Plan]:
        """Active plans that have at least one price, ordered by (sort_order, name)."""
        priced = select(BillingPlanPriceTable.plan_id).distinct()
        stmt = (
            select(BillingPlanTable)
            .where(
                BillingPlanTable.status == PlanStatus.ACTIVE.value,
                BillingPlanTable.plan_id.in_(priced),
            )
            .order_by(BillingPlanTable.sort_order, BillingPlanTable.name)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        return [await self._load_plan(row) for row in rows]

    async def list_plans(self, status: PlanStatus | None = None) -> list[Plan]:
        stmt = select(BillingPlanTable).order_by(BillingPlanTable.sort_order, BillingPlanTable.name)
        if status is not None:
            stmt = stmt.where(BillingPlanTable.status == status.value)
        rows = (await self.db.execute(stmt)).scalars().all()
        return [await self._load_plan(row) for row in rows]

    def get_price_entry(
        self,
        plan: Plan,
        currency: str,
        period: BillingPeriod | str,
        at: datetime | None = None,
    ) -> PlanPrice:
        """Price version effective at ``at`` for the combination."""
        at = at or self.clock()
        period = BillingPeriod(period)
        currency = currency.upper()
        candidates = [
            p
            for p in plan.prices
            if p.currency == currency and p.billing_period == period and p.is_effective(at)
        ]
        if not candidates:
            raise NoPriceForCombinationError(plan.plan_id, currency, period.value)
        return max(candidates, key=lambda p: p.version)

    def get_price(
        self,
        plan: Plan,
        currency: str,
        period: BillingPeriod | str,
        at: datetime | None = None,
    ) -> Money:
        entry = self.get_price_entry(plan, currency, period, at)
        return self.money.money_from_minor_units(entry.amount_minor, entry.currency)

    def validate_for_subscription(self, plan: Plan, period: BillingPeriod | str) -> None:
        """Raise unless the plan can be subscribed to with this period."""
        if not plan.is_active:
            raise PlanNotActiveError(plan.plan_id, plan.status.value)
        if not plan.supports_period(period):
            raise PeriodNotSupportedError(plan.plan_id, BillingPeriod(period).value)

    async def has_feature(self, plan_id: str, feature_key: str) -> bool:
        return (await self.get_plan(plan_id)).has_feature(feature_key)

    async def get_limit(self, plan_id: str, resource: str) -> int | None:
        return (await self.get_plan(plan_id)).get_limit(resource)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def create_plan(self, request: PlanCreateRequest) -> Plan:
        """Create a draft plan."""
        await self._ensure_slug_available(request.slug)

        row = BillingPlanTable(
            plan_id=generate_plan_id(),
            slug=request.slug,
            name=request.name,
            description=request.description,
            status=PlanStatus.DRAFT.value,
            is_recommended=request.is_recommended,
            sort_order=request.sort_order,
            trial_days=request.trial_days,
            billing_periods=[p.value for p in request.billing_periods],
            metadata_json=request.metadata,
        )
        self.db.add(row)
        await self.db.flush()
        await self._replace_features(row.plan_id, request.features)
        await self._replace_limits(row.plan_id, request.limits)
        await self.db.flush()

        logger.info("catalog.plan_created", plan_id=row.plan_id, slug=row.slug)
        return await self._load_plan(row)

    async def update_plan(self, plan_id: str, request: PlanUpdateRequest) -> Plan:
        """Update plan attributes; the slug is frozen once the plan is active and subscribed."""
        row = await self._get_row(plan_id)

        if request.slug is not None and request.slug != row.slug:
            if row.status == PlanStatus.ACTIVE.value and await self.is_subscribed(plan_id):
                raise PlanConfigurationError(
                    "Slug cannot change while the plan has subscriptions", plan_id
                )
            await self._ensure_slug_available(request.slug)
            row.slug = request.slug

        if request.name is not None:
            row.name = request.name
        if request.description is not None:
            row.description = request.description
        if request.trial_days is not None:
            row.trial_days = request.trial_days
        if request.billing_periods is not None:
            row.billing_periods = list(dict.fromkeys(p.value for p in request.billing_periods))
        if request.sort_order is not None:
            row.sort_order = request.sort_order
        if request.metadata is not None:
            row.metadata_json = request.metadata
        if request.features is not None:
            await self._replace_features(plan_id, request.features)
        if request.limits is not None:
            await self._replace_limits(plan_id, request.limits)

        await self.db.flush()
        logger.info("catalog.plan_updated", plan_id=plan_id)
        return await self._load_plan(row)

    async def add_price(self, plan_id: str, request: PriceCreateRequest) -> PlanPrice:
        """Add the first price for a (currency, period) combination."""
        row = await self._get_row(plan_id)
        if request.billing_period.value not in row.billing_periods:
            raise PeriodNotSupportedError(plan_id, request.billing_period.value)

        if await self._open_price(plan_id, request.currency, request.billing_period) is not None:
            raise PlanConfigurationError(
                f"Plan already has a {request.billing_period.value} price in {request.currency}",
                plan_id,
            )

        price = BillingPlanPriceTable(
            price_id=generate_price_id(),
            plan_id=plan_id,
            currency=self.money.validate_currency(request.currency),
            billing_period=request.billing_period.value,
            amount_minor=request.amount_minor,
            compare_at_minor=request.compare_at_minor,
            setup_fee_minor=request.setup_fee_minor,
            version=1,
        )
        self.db.add(price)
        await self.db.flush()

        logger.info(
            "catalog.price_added",
            plan_id=plan_id,
            currency=price.currency,
            billing_period=price.billing_period,
            amount_minor=price.amount_minor,
        )
        return PlanPrice.model_validate(price)

    async def change_price(self, plan_id: str, request: PriceCreateRequest) -> PlanPrice:
        """
        Change the price of a combination.

        A subscribed plan never has its price rows rewritten: the current
        version is closed and a new version opened at the same instant.
        """
        await self._get_row(plan_id)
        current = await self._open_price(plan_id, request.currency, request.billing_period)
        if current is None:
            return await self.add_price(plan_id, request)

        if not await self.is_subscribed(plan_id):
            current.amount_minor = request.amount_minor
            current.compare_at_minor = request.compare_at_minor
            current.setup_fee_minor = request.setup_fee_minor
            await self.db.flush()
            logger.info("catalog.price_updated", plan_id=plan_id, price_id=current.price_id)
            return PlanPrice.model_validate(current)

        now = self.clock()
        current.effective_until = now
        new_version = BillingPlanPriceTable(
            price_id=generate_price_id(),
            plan_id=plan_id,
            currency=current.currency,
            billing_period=current.billing_period,
            amount_minor=request.amount_minor,
            compare_at_minor=request.compare_at_minor,
            setup_fee_minor=request.setup_fee_minor,
            version=current.version + 1,
            effective_from=now,
        )
        self.db.add(new_version)
        await self.db.flush()

        logger.info(
            "catalog.price_versioned",
            plan_id=plan_id,
            previous_price_id=current.price_id,
            price_id=new_version.price_id,
            version=new_version.version,
        )
        return PlanPrice.model_validate(new_version)

    async def activate_plan(self, plan_id: str) -> Plan:
        """Publish a plan. A plan needs at least one price to be activated."""
        row = await self._get_row(plan_id)
        count_stmt = select(func.count()).where(BillingPlanPriceTable.plan_id == plan_id)
        if (await self.db.execute(count_stmt)).scalar_one() == 0:
            raise PlanConfigurationError("A plan needs at least one price to be activated", plan_id)

        row.status = PlanStatus.ACTIVE.value
        await self.db.flush()
        logger.info("catalog.plan_activated", plan_id=plan_id)
        return await self._load_plan(row)

    async def deprecate_plan(self, plan_id: str) -> Plan:
        """Stop offering a plan. Existing subscriptions keep it."""
        row = await self._get_row(plan_id)
        row.status = PlanStatus.DEPRECATED.value
        row.is_recommended = False

        settings_row = await self.db.get(BillingCatalogSettingsTable, CATALOG_SETTINGS_ID)
        if settings_row is not None and settings_row.default_plan_id == plan_id:
            settings_row.default_plan_id = None

        await self.db.flush()
        logger.info("catalog.plan_deprecated", plan_id=plan_id)
        return await self._load_plan(row)

    async def set_default_plan(self, plan_id: str | None) -> Plan | None:
        """Set or clear the catalog default plan. Only active plans qualify."""
        if plan_id is not None:
            plan = await self.get_plan(plan_id)
            if not plan.is_active:
                raise PlanNotActiveError(plan_id, plan.status.value)

        settings_row = await self.db.get(BillingCatalogSettingsTable, CATALOG_SETTINGS_ID)
        if settings_row is None:
            settings_row = BillingCatalogSettingsTable(settings_id=CATALOG_SETTINGS_ID)
            self.db.add(settings_row)
        settings_row.default_plan_id = plan_id
        await self.db.flush()

        logger.info("catalog.default_plan_set", plan_id=plan_id)
        return await self.get_plan(plan_id) if plan_id else None

    async def get_default_plan(self) -> Plan | None:
        settings_row = await self.db.get(BillingCatalogSettingsTable, CATALOG_SETTINGS_ID)
        if settings_row is None or settings_row.default_plan_id is None:
            return None
        return await self.get_plan(settings_row.default_plan_id)

    async def set_recommended(self, plan_id: str) -> Plan:
        """Mark one plan as recommended, clearing the flag everywhere else."""
        row = await self._get_row(plan_id)
        await self.db.execute(
            update(BillingPlanTable)
            .where(BillingPlanTable.is_recommended.is_(True))
            .values(is_recommended=False)
            .execution_options(synchronize_session="fetch")
        )
        row.is_recommended = True
        await self.db.flush()
        return await self._load_plan(row)

    async def reorder_plans(self, plan_ids: list[str]) -> list[Plan]:
        """Set display order from list position. Plans not listed keep their order."""
        for plan_id in plan_ids:
            await self._get_row(plan_id)
        for index, plan_id in enumerate(plan_ids):
            await self.db.execute(
                update(BillingPlanTable)
                .where(BillingPlanTable.plan_id == plan_id)
                .values(sort_order=index)
                .execution_options(synchronize_session="fetch")
            )
        await self.db.flush()
        logger.info("catalog.plans_reordered", plan_ids=plan_ids)
        return await self.list_plans()

    async def clone_plan(self, plan_id: str, new_slug: str) -> Plan:
        """Copy a plan into a new draft with open prices, features and limits."""
        source = await self.get_plan(plan_id)
        request = PlanCreateRequest(
            slug=new_slug,
            name=source.name,
            description=source.description,
            trial_days=source.trial_days,
            billing_periods=source.billing_periods,
            sort_order=source.sort_order,
            features=source.features,
            limits=source.limits,
            metadata=source.metadata,
        )
        clone = await self.create_plan(request)
        for price in source.prices:
            if price.is_open:
                await self.add_price(
                    clone.plan_id,
                    PriceCreateRequest(
                        currency=price.currency,
                        billing_period=price.billing_period,
                        amount_minor=price.amount_minor,
                        compare_at_minor=price.compare_at_minor,
                        setup_fee_minor=price.setup_fee_minor,
                    ),
                )
        return await self.get_plan(clone.plan_id)

    async def delete_plan(self, plan_id: str) -> None:
        """
        Remove a plan with its prices, features and limits.

        Only plans no subscription has ever used may be deleted. A plan with
        subscriptions, current or ended, can only be deprecated.
        """
        row = await self._get_row(plan_id)
        if await self.is_subscribed(plan_id):
            raise PlanConfigurationError(
                "A plan with subscriptions cannot be deleted; deprecate it instead", plan_id
            )

        for table in (BillingPlanPriceTable, BillingPlanFeatureTable, BillingPlanLimitTable):
            await self.db.execute(delete(table).where(table.plan_id == plan_id))
        settings_row = await self.db.get(BillingCatalogSettingsTable, CATALOG_SETTINGS_ID)
        if settings_row is not None and settings_row.default_plan_id == plan_id:
            settings_row.default_plan_id = None
        await self.db.delete(row)
        await self.db.flush()
        logger.info("catalog.plan_deleted", plan_id=plan_id, status=row.status)

    async def get_plan_analytics(self, plan_id: str, now: datetime | None = None) -> PlanAnalytics:
        """Subscriber counts, 30-day churn and recurring revenue for a plan."""
        await self._get_row(plan_id)
        now = now or self.clock()
        subs = BillingSubscriptionTable

        status_counts = dict(
            (
                await self.db.execute(
                    select(subs.status, func.count())
                    .where(subs.plan_id == plan_id)
                    .group_by(subs.status)
                )
            ).all()
        )
        active = sum(status_counts.get(s, 0) for s in _ACTIVE_STATUSES)

        ledger = BillingLedgerEntryTable
        churned_stmt = select(func.count(func.distinct(ledger.subscription_id))).where(
            ledger.plan_id == plan_id,
            ledger.event_type.in_(_CHURN_EVENTS),
            ledger.created_at >= now - CHURN_WINDOW,
        )
        churned = (await self.db.execute(churned_stmt)).scalar_one()

        paying = await self.db.execute(
            select(subs.currency, subs.billing_period, subs.price_minor).where(
                subs.plan_id == plan_id, subs.status.in_(_PAYING_STATUSES)
            )
        )
        monthly: dict[str, Fraction] = {}
        for currency, period, price_minor in paying.all():
            months = _MONTHS_PER_PERIOD.get(BillingPeriod(period))
            if months:
                share = Fraction(price_minor, months)
                monthly[currency] = monthly.get(currency, Fraction(0)) + share

        return PlanAnalytics(
            plan_id=plan_id,
            total_subscribers=sum(status_counts.values()),
            active_subscribers=active,
            trialing_subscribers=status_counts.get("trialing", 0),
            churned_last_30_days=churned,
            churn_rate=round(churned / (active + churned), 4) if active + churned else 0.0,
            mrr_minor={c: _round_half_up(v) for c, v in sorted(monthly.items())},
            arr_minor={c: _round_half_up(v * 12) for c, v in sorted(monthly.items())},
            generated_at=now,
        )

    async def compare_plans(self, plan_ids: list[str]) -> PlanComparison:
        """Feature matrix for the given plans; missing features show as "-"."""
        plans = [await self.get_plan(plan_id) for plan_id in plan_ids]
        plans.sort(key=lambda p: (p.sort_order, p.name))

        keys = list(dict.fromkeys(f.feature_key for plan in plans for f in plan.features))
        matrix: dict[str, dict[str, str]] = {}
        for key in keys:
            matrix[key] = {}
            for plan in plans:
                feature = plan.get_feature(key)
                matrix[key][plan.slug] = (feature.value if feature else None) or "-"

        return PlanComparison(plans=plans, features_matrix=matrix)

    async def is_subscribed(self, plan_id: str) -> bool:
        stmt = select(func.count()).where(
            or_(
                BillingSubscriptionTable.plan_id == plan_id,
                BillingSubscriptionTable.pending_plan_id == plan_id,
            )
        )
        return (await self.db.execute(stmt)).scalar_one() > 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_row(self, plan_id: str) -> BillingPlanTable:
        row = await self.db.get(BillingPlanTable, plan_id)
        if row is None:
            raise PlanNotFoundError(plan_id)
        return row

    async def _ensure_slug_available(self, slug: str) -> None:
        stmt = select(func.count()).where(BillingPlanTable.slug == slug)
        if (await self.db.execute(stmt)).scalar_one() > 0:
            raise PlanConfigurationError(f"Plan slug {slug} is already in use")

    async def _open_price(
        self, plan_id: str, currency: str, period: BillingPeriod
    ) -> BillingPlanPriceTable | None:
        stmt = select(BillingPlanPriceTable).where(
            BillingPlanPriceTable.plan_id == plan_id,
            BillingPlanPriceTable.currency == currency.upper(),
            BillingPlanPriceTable.billing_period == period.value,
            BillingPlanPriceTable.effective_until.is_(None),
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _replace_features(self, plan_id: str, features: list[PlanFeature]) -> None:
        await self.db.execute(
            delete(BillingPlanFeatureTable).where(BillingPlanFeatureTable.plan_id == plan_id)
        )
        for index, feature in enumerate(features):
            self.db.add(
                BillingPlanFeatureTable(
                    feature_id=f"feat_{uuid4().hex[:12]}",
                    plan_id=plan_id,
                    feature_key=feature.feature_key,
                    value=feature.value,
                    feature_type=feature.feature_type.value,
                    is_highlighted=feature.is_highlighted,
                    sort_order=feature.sort_order or index,
                )
            )

    async def _replace_limits(self, plan_id: str, limits: dict[str, int | None]) -> None:
        await self.db.execute(
            delete(BillingPlanLimitTable).where(BillingPlanLimitTable.plan_id == plan_id)
        )
        for resource, value in limits.items():
            self.db.add(
                BillingPlanLimitTable(
                    limit_id=f"lim_{uuid4().hex[:12]}",
                    plan_id=plan_id,
                    resource=resource,
                    limit_value=value,
                )
            )

    async def _load_plan(self, row: BillingPlanTable) -> Plan:
        prices = (
            (
                await self.db.execute(
                    select(BillingPlanPriceTable)
                    .where(BillingPlanPriceTable.plan_id == row.plan_id)
                    .order_by(BillingPlanPriceTable.version)
                )
            )
            .scalars()
            .all()
        )
        features = (
            (
                await self.db.execute(
                    select(BillingPlanFeatureTable)
                    .where(BillingPlanFeatureTable.plan_id == row.plan_id)
                    .order_by(BillingPlanFeatureTable.sort_order)
                )
            )
            .scalars()
            .all()
        )
        limits = (
            (
                await self.db.execute(
                    select(BillingPlanLimitTable).where(BillingPlanLimitTable.plan_id == row.plan_id)
                )
            )
            .scalars()
            .all()
        )

        return Plan(
            plan_id=row.plan_id,
            slug=row.slug,
            name=row.name,
            description=row.description,
            status=PlanStatus(row.status),
            is_recommended=row.is_recommended,
            sort_order=row.sort_order,
            trial_days=row.trial_days,
            billing_periods=[BillingPeriod(p) for p in row.billing_periods],
            features=[PlanFeature.model_validate(f) for f in features],
            limits={limit.resource: limit.limit_value for limit in limits},
            prices=[PlanPrice.model_validate(p) for p in prices],
            metadata=row.metadata_json or {},
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


__all__ = ["CatalogService", "generate_plan_id", "generate_price_id"]
