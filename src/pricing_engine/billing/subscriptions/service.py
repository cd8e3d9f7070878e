"""
Subscription lifecycle engine.

Every state-changing call follows the same unit of work:

1. claim the subscription row
2. read it and check the transition and its guards
3. reserve and perform any external money movement
4. persist the new state, one ledger entry and the reservation outcome, and
   release the claim, all in one transaction
5. publish the resulting domain events

A declined charge leaves the subscription untouched except for the renewal
failure transition. A charge whose outcome is unknown, or a charge that
succeeded but could not be recorded, raises and alerts an operator; the
reservation row is left for reconciliation.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TypeAlias
from uuid import uuid4

import structlog
from moneyed import Money
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from pricing_engine.billing.catalog.models import BillingPeriod, Plan
from pricing_engine.billing.catalog.service import CatalogService
from pricing_engine.billing.collaborators import (
    CallerIdentity,
    ChargeResult,
    CurrencyConverter,
    NotificationSink,
    PaymentProcessor,
)
from pricing_engine.billing.config import (
    BillingConfig,
    DowngradePolicy,
    NegativeProrationPolicy,
    get_billing_config,
)
from pricing_engine.billing.coupons.models import CouponValidation
from pricing_engine.billing.coupons.service import CouponService
from pricing_engine.billing.events import BillingEvents, DomainEvent, EventDispatcher
from pricing_engine.billing.exceptions import (
    BillingError,
    BillingIntegrityError,
    BillingPermissionError,
    ConcurrentModificationError,
    CouponInvalidError,
    CurrencyMismatchError,
    CurrencyServiceError,
    InvalidAmountError,
    InvalidTransitionError,
    NoPriceForCombinationError,
    PaymentFailedError,
    PaymentOutcomeUnknownError,
    PaymentProcessorError,
    SamePlanError,
    SubscriptionNotFoundError,
    ValidationError,
)
from pricing_engine.billing.models import (
    BillingChargeReservationTable,
    BillingLedgerEntryTable,
    BillingSubscriptionTable,
)
from pricing_engine.billing.money_utils import CurrencyPrecision, MoneyHandler
from pricing_engine.billing.proration import ProrationCalculator, add_billing_period
from pricing_engine.billing.subscriptions.locking import SubscriptionClaims
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
from pricing_engine.billing.subscriptions.state_machine import (
    ensure_transition,
    initial_status,
    status_after_failed_renewal,
)
from pricing_engine.logging import get_alert_logger, log_audit_event

logger = structlog.get_logger(__name__)

Mutation: TypeAlias = Callable[[BillingSubscriptionTable, str | None], None]


def generate_subscription_id() -> str:
    return f"sub_{uuid4().hex[:16]}"


@dataclass
class _Context:
    """What a planner may read while deciding on a change."""

    sub: Subscription
    session: AsyncSession
    catalog: CatalogService
    coupons: CouponService
    now: datetime


@dataclass
class _Change:
    """A decided state change, applied to the row inside the persist transaction."""

    event_type: LedgerEventType
    apply: Mutation
    charge: Money | None = None
    refund: Money | None = None
    delta: Money | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    event_types: list[str] = field(default_factory=list)
    on_decline: Callable[[str | None], "_Change"] | None = None
    failure: BillingError | None = None


Planner: TypeAlias = Callable[[_Context], Awaitable[_Change]]


class SubscriptionService:
    """Subscription state machine with exact money handling."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_processor: PaymentProcessor,
        currency_converter: CurrencyConverter | None = None,
        notification_sink: NotificationSink | None = None,
        config: BillingConfig | None = None,
        money: MoneyHandler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.processor = payment_processor
        self.converter = currency_converter
        self.config = config or get_billing_config()
        self.money = money or MoneyHandler(
            default_currency=self.config.default_currency,
            default_locale=self.config.default_locale,
            precision=CurrencyPrecision(self.config.currency_precision),
        )
        self.clock = clock or (lambda: datetime.now(UTC))
        self.proration = ProrationCalculator(self.money)
        self.dispatcher = EventDispatcher(
            notification_sink, timeout_seconds=self.config.timeouts.notification_seconds
        )
        self.claims = SubscriptionClaims(session_factory, self.config.concurrency, self.clock)
        self.alerts = get_alert_logger()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_period: BillingPeriod | str,
        coupon_code: str | None = None,
        currency: str | None = None,
        caller: CallerIdentity | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SubscriptionResult:
        """
        Subscribe a user to a plan.

        Plans with a trial start in ``trialing`` without a charge. Otherwise the
        first period is charged, net of the coupon discount, before anything is
        persisted; a declined charge raises PaymentFailedError and creates
        nothing.
        """
        if caller is not None and not caller.is_admin and caller.user_id != user_id:
            raise BillingPermissionError("create subscriptions for other users", caller.user_id)

        now = self.clock()
        period = BillingPeriod(billing_period)
        currency = self._currency(currency)
        subscription_id = generate_subscription_id()

        async with self.session_factory() as session:
            ctx_catalog = self._catalog(session)
            plan = await ctx_catalog.get_plan(plan_id)
            ctx_catalog.validate_for_subscription(plan, period)
            price = await self._resolve_price(ctx_catalog, plan, currency, period, now)
            validation: CouponValidation | None = None
            if coupon_code:
                validation = await self._coupons(session).validate(
                    coupon_code, user_id, plan, period, price, now
                )

        status = initial_status(plan.trial_days)
        zero = self.money.zero(currency)
        if status == SubscriptionStatus.TRIALING:
            discount = zero
            charge = zero
            ends_at = now + timedelta(days=plan.trial_days)
            trial_ends_at: datetime | None = ends_at
        else:
            discount = validation.discount if validation else zero
            charge = self.money.subtract_money(price, discount)
            ends_at = add_billing_period(now, period)
            trial_ends_at = None

        charge_ref: str | None = None
        reservation_id: str | None = None
        if self._minor(charge) > 0:
            reservation_id = await self._reserve(subscription_id, user_id, Operation.CREATE, charge)
            result = await self._charge(reservation_id, subscription_id, user_id, charge)
            if not result.success:
                raise PaymentFailedError(
                    result.failure_reason or "Payment was declined",
                    subscription_id,
                    operation=Operation.CREATE.value,
                )
            charge_ref = result.charge_ref

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    coupon_id = None
                    if coupon_code:
                        applied = await self._coupons(session).apply(
                            coupon_code, user_id, subscription_id, plan, period, price, now
                        )
                        coupon_id = applied.coupon.coupon_id

                    row = BillingSubscriptionTable(
                        subscription_id=subscription_id,
                        user_id=user_id,
                        plan_id=plan.plan_id,
                        billing_period=period.value,
                        currency=currency,
                        status=status.value,
                        trial_ends_at=trial_ends_at,
                        starts_at=now,
                        ends_at=ends_at,
                        coupon_id=coupon_id,
                        price_minor=self._minor(price),
                        credit_minor=0,
                        cycle_charged_minor=self._minor(charge),
                        cycle_refunded_minor=0,
                        last_charge_ref=charge_ref,
                        renewal_attempts=0,
                        metadata_json=metadata or {},
                    )
                    session.add(row)
                    await session.flush()

                    entry = BillingLedgerEntryTable(
                        entry_id=self._entry_id(),
                        subscription_id=subscription_id,
                        event_type=LedgerEventType.CREATED.value,
                        delta_minor=-self._minor(discount),
                        charged_minor=self._minor(charge),
                        currency=currency,
                        charge_ref=charge_ref,
                        status_before=None,
                        status_after=status.value,
                        plan_id=plan.plan_id,
                        metadata_json={
                            "price_minor": self._minor(price),
                            "discount_minor": self._minor(discount),
                            "coupon_code": validation.coupon.code if validation else None,
                            "trial_days": plan.trial_days,
                        },
                        created_at=now,
                    )
                    session.add(entry)
                    if reservation_id:
                        await self._commit_reservation(session, reservation_id, charge_ref)
                    await session.flush()

                    subscription = Subscription.model_validate(row)
                    ledger = LedgerEntry.model_validate(entry)
        except CouponInvalidError:
            # Coupon ran out between validation and redemption
            if charge_ref is not None and reservation_id is not None:
                await self._void_charge(subscription_id, reservation_id, charge_ref, charge)
            raise
        except SQLAlchemyError as e:
            if charge_ref is None:
                raise
            raise await self._integrity_failure(
                subscription_id, Operation.CREATE, charge_ref, reservation_id, charge, e
            ) from e

        event_types = [BillingEvents.SUBSCRIPTION_CREATED]
        if charge_ref:
            event_types.append(BillingEvents.PAYMENT_SUCCEEDED)
        if validation:
            event_types.append(BillingEvents.COUPON_REDEEMED)
        events = [
            self._event(
                t,
                subscription,
                ledger_entry_id=ledger.entry_id,
                amount_minor=self._minor(charge),
                coupon_code=validation.coupon.code if validation else None,
            )
            for t in event_types
        ]

        logger.info(
            "subscription.create",
            subscription_id=subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=status.value,
            charged_minor=self._minor(charge),
            discount_minor=self._minor(discount),
            currency=currency,
        )
        await self.dispatcher.dispatch(events)
        return SubscriptionResult(subscription=subscription, ledger_entry=ledger, events=events)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        subscription_id: str,
        new_plan_id: str,
        prorate: bool = True,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """
        Switch to another plan immediately.

        With ``prorate`` the prorated difference for the rest of the cycle is
        charged now and the cycle end is kept; a negative difference becomes
        account credit or a refund depending on policy. Without it, and for
        trialing or past-due subscriptions, the full new price is charged and a
        new cycle starts now.
        """

        async def planner(ctx: _Context) -> _Change:
            sub, now = ctx.sub, ctx.now
            if new_plan_id == sub.plan_id:
                raise SamePlanError(sub.subscription_id, new_plan_id)
            target = await ctx.catalog.get_plan(new_plan_id)
            ctx.catalog.validate_for_subscription(target, sub.billing_period)
            target_price = await self._resolve_price(
                ctx.catalog, target, sub.currency, sub.billing_period, now
            )
            target_minor = self._minor(target_price)
            metadata: dict[str, Any] = {
                "from_plan_id": sub.plan_id,
                "to_plan_id": new_plan_id,
                "price_minor": target_minor,
            }

            def swap(row: BillingSubscriptionTable) -> None:
                row.plan_id = new_plan_id
                row.pending_plan_id = None
                row.price_minor = target_minor
                row.status = SubscriptionStatus.ACTIVE.value

            if not prorate or sub.status in (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
                new_end = add_billing_period(now, sub.billing_period)
                was_trialing = sub.status == SubscriptionStatus.TRIALING

                def restart_cycle(row: BillingSubscriptionTable, ref: str | None) -> None:
                    swap(row)
                    row.starts_at = now
                    row.ends_at = new_end
                    if was_trialing:
                        row.trial_ends_at = now
                    row.cycle_charged_minor = target_minor
                    row.cycle_refunded_minor = 0
                    row.renewal_attempts = 0
                    row.next_retry_at = None
                    if ref:
                        row.last_charge_ref = ref

                event_types = [BillingEvents.SUBSCRIPTION_UPGRADED]
                if target_minor > 0:
                    event_types.append(BillingEvents.PAYMENT_SUCCEEDED)
                if was_trialing:
                    event_types.append(BillingEvents.SUBSCRIPTION_TRIAL_ENDED)
                return _Change(
                    LedgerEventType.UPGRADED,
                    restart_cycle,
                    charge=target_price,
                    metadata={**metadata, "prorated": False},
                    event_types=event_types,
                )

            current_price = self._money(sub.price_minor, sub.currency)
            result = self.proration.calculate(
                current_price, target_price, sub.starts_at, sub.ends_at, now
            )
            net = self._minor(result.net_delta)
            metadata.update(
                prorated=True,
                remaining_fraction=str(result.remaining_fraction),
                unused_credit_minor=self._minor(result.unused_credit),
                new_charge_minor=self._minor(result.new_charge),
                net_delta_minor=net,
            )

            if result.effective_next_cycle or net == 0:
                return _Change(
                    LedgerEventType.UPGRADED,
                    lambda row, ref: swap(row),
                    delta=self.money.zero(sub.currency),
                    metadata=metadata,
                    event_types=[BillingEvents.SUBSCRIPTION_UPGRADED],
                )

            if net > 0:

                def charge_difference(row: BillingSubscriptionTable, ref: str | None) -> None:
                    swap(row)
                    row.cycle_charged_minor += net
                    if ref:
                        row.last_charge_ref = ref

                return _Change(
                    LedgerEventType.UPGRADED,
                    charge_difference,
                    charge=result.net_delta,
                    metadata=metadata,
                    event_types=[
                        BillingEvents.SUBSCRIPTION_UPGRADED,
                        BillingEvents.PAYMENT_SUCCEEDED,
                    ],
                )

            owed = -net
            refund_allowed = (
                self.config.policy.negative_proration_policy == NegativeProrationPolicy.REFUND
                and sub.last_charge_ref is not None
                and owed <= sub.refundable_minor
            )
            if refund_allowed:

                def refund_difference(row: BillingSubscriptionTable, ref: str | None) -> None:
                    swap(row)
                    row.cycle_refunded_minor += owed

                return _Change(
                    LedgerEventType.UPGRADED,
                    refund_difference,
                    refund=self._money(owed, sub.currency),
                    delta=result.net_delta,
                    metadata={**metadata, "credit_handling": "refund"},
                    event_types=[
                        BillingEvents.SUBSCRIPTION_UPGRADED,
                        BillingEvents.PAYMENT_REFUNDED,
                    ],
                )

            def credit_difference(row: BillingSubscriptionTable, ref: str | None) -> None:
                swap(row)
                row.credit_minor += owed

            return _Change(
                LedgerEventType.UPGRADED,
                credit_difference,
                delta=result.net_delta,
                metadata={**metadata, "credit_handling": "credit"},
                event_types=[BillingEvents.SUBSCRIPTION_UPGRADED],
            )

        return await self._execute(
            subscription_id, Operation.UPGRADE, planner, caller=caller, claim_token=claim_token
        )

    async def downgrade(
        self,
        subscription_id: str,
        new_plan_id: str,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """
        Move to another plan without proration.

        Under the ``end_of_cycle`` policy the plan is recorded as pending and
        activated by the next renewal; under ``immediate`` it replaces the
        current plan now and its price applies from the next renewal.
        """

        async def planner(ctx: _Context) -> _Change:
            sub, now = ctx.sub, ctx.now
            if new_plan_id == sub.plan_id:
                raise SamePlanError(sub.subscription_id, new_plan_id)
            target = await ctx.catalog.get_plan(new_plan_id)
            ctx.catalog.validate_for_subscription(target, sub.billing_period)
            target_price = await self._resolve_price(
                ctx.catalog, target, sub.currency, sub.billing_period, now
            )
            target_minor = self._minor(target_price)
            policy = self.config.policy.downgrade_policy
            metadata: dict[str, Any] = {
                "from_plan_id": sub.plan_id,
                "to_plan_id": new_plan_id,
                "price_minor": target_minor,
                "policy": policy.value,
            }

            if policy == DowngradePolicy.END_OF_CYCLE:

                def schedule(row: BillingSubscriptionTable, ref: str | None) -> None:
                    row.pending_plan_id = new_plan_id
                    row.status = SubscriptionStatus.ACTIVE.value

                return _Change(
                    LedgerEventType.DOWNGRADED,
                    schedule,
                    metadata={**metadata, "effective_at": sub.ends_at.isoformat()},
                    event_types=[BillingEvents.SUBSCRIPTION_DOWNGRADE_SCHEDULED],
                )

            def switch(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.plan_id = new_plan_id
                row.pending_plan_id = None
                row.price_minor = target_minor
                row.status = SubscriptionStatus.ACTIVE.value

            return _Change(
                LedgerEventType.DOWNGRADED,
                switch,
                metadata={**metadata, "effective_at": now.isoformat()},
                event_types=[BillingEvents.SUBSCRIPTION_DOWNGRADED],
            )

        return await self._execute(
            subscription_id, Operation.DOWNGRADE, planner, caller=caller, claim_token=claim_token
        )

    # ------------------------------------------------------------------
    # Pause / resume / cancel / extend
    # ------------------------------------------------------------------

    async def pause(
        self,
        subscription_id: str,
        resume_at: datetime | None = None,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """Suspend billing. A scheduled downgrade is dropped."""

        async def planner(ctx: _Context) -> _Change:
            now = ctx.now
            if resume_at is not None and (resume_at.tzinfo is None or resume_at <= now):
                raise ValidationError(
                    "resume_at must be a timezone-aware time in the future",
                    "INVALID_RESUME_AT",
                    context={"resume_at": resume_at.isoformat()},
                )

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.status = SubscriptionStatus.PAUSED.value
                row.paused_at = now
                row.resume_at = resume_at
                row.pending_plan_id = None
                row.next_retry_at = None

            return _Change(
                LedgerEventType.PAUSED,
                apply,
                metadata={"resume_at": resume_at.isoformat() if resume_at else None},
                event_types=[BillingEvents.SUBSCRIPTION_PAUSED],
            )

        return await self._execute(
            subscription_id, Operation.PAUSE, planner, caller=caller, claim_token=claim_token
        )

    async def resume(
        self,
        subscription_id: str,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """Reactivate a paused subscription, keeping the paid time left at pause."""

        async def planner(ctx: _Context) -> _Change:
            sub, now = ctx.sub, ctx.now
            paused_at = sub.paused_at or now
            remaining = max(sub.ends_at - paused_at, timedelta(0))
            new_end = now + remaining

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.status = SubscriptionStatus.ACTIVE.value
                row.starts_at = now
                row.ends_at = new_end
                row.paused_at = None
                row.resume_at = None
                row.renewal_attempts = 0
                row.next_retry_at = None

            return _Change(
                LedgerEventType.RESUMED,
                apply,
                metadata={
                    "paused_seconds": int((now - paused_at).total_seconds()),
                    "remaining_seconds": int(remaining.total_seconds()),
                },
                event_types=[BillingEvents.SUBSCRIPTION_RESUMED],
            )

        return await self._execute(
            subscription_id, Operation.RESUME, planner, caller=caller, claim_token=claim_token
        )

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        immediate: bool = False,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """Cancel; access runs to the end of the paid period unless ``immediate``."""

        async def planner(ctx: _Context) -> _Change:
            now = ctx.now

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.status = SubscriptionStatus.CANCELLED.value
                row.cancelled_at = now
                row.cancel_reason = reason
                row.pending_plan_id = None
                row.next_retry_at = None
                if immediate:
                    row.ends_at = min(row.ends_at, now)
                    if row.trial_ends_at is not None:
                        row.trial_ends_at = min(row.trial_ends_at, now)

            return _Change(
                LedgerEventType.CANCELLED,
                apply,
                reason=reason,
                metadata={"immediate": immediate},
                event_types=[BillingEvents.SUBSCRIPTION_CANCELLED],
            )

        return await self._execute(
            subscription_id, Operation.CANCEL, planner, caller=caller, claim_token=claim_token
        )

    async def extend(
        self,
        subscription_id: str,
        days: int,
        reason: str | None = None,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """Push the period end, and the trial end while trialing, by ``days``."""

        async def planner(ctx: _Context) -> _Change:
            sub = ctx.sub
            if days <= 0:
                raise InvalidAmountError("Extension must be at least one day", days=days)
            extra = timedelta(days=days)
            trialing = sub.status == SubscriptionStatus.TRIALING

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.ends_at = row.ends_at + extra
                if trialing and row.trial_ends_at is not None:
                    row.trial_ends_at = row.trial_ends_at + extra

            return _Change(
                LedgerEventType.EXTENDED,
                apply,
                reason=reason,
                metadata={"days": days, "previous_ends_at": sub.ends_at.isoformat()},
                event_types=[BillingEvents.SUBSCRIPTION_EXTENDED],
            )

        return await self._execute(
            subscription_id, Operation.EXTEND, planner, caller=caller, claim_token=claim_token
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    async def renew(
        self,
        subscription_id: str,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        """
        Start the next billing cycle.

        A pending plan is activated first and its current catalog price becomes
        the new agreed price; otherwise the agreed price is charged again.
        Recurring coupon discounts and account credit are deducted from the
        charge.

        Raises:
            InvalidTransitionError: Not due yet, or not renewable from its status
            PaymentFailedError: The charge was declined. The subscription has
                been moved to ``past_due``, or ``expired`` once the attempt
                limit is reached.
        """

        async def planner(ctx: _Context) -> _Change:
            sub, now = ctx.sub, ctx.now
            if sub.status == SubscriptionStatus.TRIALING:
                trial_end = sub.trial_ends_at or sub.ends_at
                if trial_end > now:
                    raise InvalidTransitionError(
                        sub.status.value, Operation.RENEW.value, "trial has not ended"
                    )
            elif sub.status == SubscriptionStatus.ACTIVE and sub.ends_at > now:
                raise InvalidTransitionError(
                    sub.status.value, Operation.RENEW.value, "current period has not ended"
                )

            pending_plan_id = sub.pending_plan_id
            if pending_plan_id:
                pending_plan = await ctx.catalog.get_plan(pending_plan_id)
                price = await self._resolve_price(
                    ctx.catalog, pending_plan, sub.currency, sub.billing_period, now
                )
            else:
                price = self._money(sub.price_minor, sub.currency)
            price_minor = self._minor(price)

            first_payment = await self._awaiting_first_payment(ctx.session, sub)
            discount = await ctx.coupons.discount_for_renewal(sub.coupon_id, price, first_payment)
            due_minor = price_minor - self._minor(discount)
            credit_used = min(sub.credit_minor, due_minor)
            charge_minor = due_minor - credit_used
            charge = self._money(charge_minor, sub.currency)

            anchor = self._cycle_anchor(sub, now)
            new_end = add_billing_period(anchor, sub.billing_period)

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                if pending_plan_id:
                    row.plan_id = pending_plan_id
                    row.pending_plan_id = None
                row.price_minor = price_minor
                row.status = SubscriptionStatus.ACTIVE.value
                row.starts_at = anchor
                row.ends_at = new_end
                row.renewal_attempts = 0
                row.next_retry_at = None
                row.credit_minor -= credit_used
                row.cycle_charged_minor = charge_minor
                row.cycle_refunded_minor = 0
                if ref:
                    row.last_charge_ref = ref

            event_types = [BillingEvents.SUBSCRIPTION_RENEWED]
            if charge_minor > 0:
                event_types.append(BillingEvents.PAYMENT_SUCCEEDED)
            if first_payment:
                event_types.append(BillingEvents.SUBSCRIPTION_TRIAL_ENDED)
            if pending_plan_id:
                event_types.append(BillingEvents.SUBSCRIPTION_DOWNGRADED)

            def on_decline(failure_reason: str | None) -> _Change:
                attempts = sub.renewal_attempts + 1
                next_status = status_after_failed_renewal(
                    sub.status, attempts, self.config.renewal.max_attempts
                )
                if next_status == SubscriptionStatus.EXPIRED:

                    def expire(row: BillingSubscriptionTable, ref: str | None) -> None:
                        row.status = SubscriptionStatus.EXPIRED.value
                        row.renewal_attempts = attempts
                        row.next_retry_at = None
                        row.pending_plan_id = None

                    return _Change(
                        LedgerEventType.EXPIRED,
                        expire,
                        reason=failure_reason,
                        metadata={"attempts": attempts, "amount_minor": charge_minor},
                        event_types=[
                            BillingEvents.PAYMENT_FAILED,
                            BillingEvents.SUBSCRIPTION_EXPIRED,
                        ],
                    )

                retry_at = now + timedelta(hours=self.config.renewal.retry_delay_hours(attempts))

                def mark_past_due(row: BillingSubscriptionTable, ref: str | None) -> None:
                    row.status = SubscriptionStatus.PAST_DUE.value
                    row.renewal_attempts = attempts
                    row.next_retry_at = retry_at

                return _Change(
                    LedgerEventType.RENEWAL_FAILED,
                    mark_past_due,
                    reason=failure_reason,
                    metadata={
                        "attempts": attempts,
                        "amount_minor": charge_minor,
                        "next_retry_at": retry_at.isoformat(),
                    },
                    event_types=[
                        BillingEvents.PAYMENT_FAILED,
                        BillingEvents.SUBSCRIPTION_PAST_DUE,
                    ],
                )

            return _Change(
                LedgerEventType.RENEWED,
                apply,
                charge=charge,
                metadata={
                    "price_minor": price_minor,
                    "discount_minor": self._minor(discount),
                    "credit_applied_minor": credit_used,
                    "activated_plan_id": pending_plan_id,
                    "period_start": anchor.isoformat(),
                    "period_end": new_end.isoformat(),
                },
                event_types=event_types,
                on_decline=on_decline,
            )

        return await self._execute(
            subscription_id, Operation.RENEW, planner, caller=caller, claim_token=claim_token
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self,
        subscription_id: str,
        refund_type: RefundType | str = RefundType.FULL,
        amount: Money | None = None,
        reason: str | None = None,
        cancel: bool | None = None,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> RefundResult:
        """
        Refund money charged in the current cycle.

        ``full`` refunds everything not yet refunded, ``prorated`` the unused
        share of the cycle, ``partial`` the given amount. A full refund cancels
        the subscription when ``cancel`` is true, which defaults to the
        configured policy.
        """
        refund_type = RefundType(refund_type)
        should_cancel = refund_type == RefundType.FULL and (
            cancel if cancel is not None else self.config.policy.cancel_on_full_refund
        )

        async def planner(ctx: _Context) -> _Change:
            sub, now = ctx.sub, ctx.now
            refundable = sub.refundable_minor

            if refund_type == RefundType.FULL:
                minor = refundable
            elif refund_type == RefundType.PRORATED:
                cycle_paid = self._money(sub.cycle_charged_minor, sub.currency)
                prorated = self.proration.prorated_refund(cycle_paid, sub.starts_at, sub.ends_at, now)
                minor = min(self._minor(prorated), refundable)
            else:
                if amount is None:
                    raise InvalidAmountError("Partial refunds require an amount")
                if amount.currency.code != sub.currency:
                    raise CurrencyMismatchError(sub.currency, amount.currency.code)
                minor = self._minor(amount)
                if minor <= 0 or minor > refundable:
                    raise InvalidAmountError(
                        "Refund amount must be positive and within the refundable balance",
                        requested_minor=minor,
                        refundable_minor=refundable,
                    )

            if minor <= 0:
                raise InvalidAmountError(
                    "Nothing left to refund in the current cycle", refundable_minor=refundable
                )
            if sub.last_charge_ref is None:
                raise InvalidAmountError("Subscription has no charge to refund")

            def apply(row: BillingSubscriptionTable, ref: str | None) -> None:
                row.cycle_refunded_minor += minor
                if should_cancel:
                    row.status = SubscriptionStatus.CANCELLED.value
                    row.cancelled_at = now
                    row.cancel_reason = reason or "refunded"
                    row.ends_at = min(row.ends_at, now)
                    row.pending_plan_id = None
                    row.next_retry_at = None
                    row.resume_at = None

            event_types = [BillingEvents.PAYMENT_REFUNDED]
            if should_cancel:
                event_types.append(BillingEvents.SUBSCRIPTION_CANCELLED)

            return _Change(
                LedgerEventType.REFUNDED,
                apply,
                refund=self._money(minor, sub.currency),
                reason=reason,
                metadata={"refund_type": refund_type.value, "amount_minor": minor},
                event_types=event_types,
            )

        result = await self._execute(
            subscription_id, Operation.REFUND, planner, caller=caller, claim_token=claim_token
        )
        refunded = self._money(-result.ledger_entry.delta_minor, result.subscription.currency)

        log_audit_event(
            action="subscription.refunded",
            category="billing",
            user_id=caller.user_id if caller else None,
            resource_type="subscription",
            resource_id=subscription_id,
            refund_type=refund_type.value,
            amount_minor=-result.ledger_entry.delta_minor,
            currency=result.subscription.currency,
        )
        return RefundResult(
            subscription=result.subscription,
            ledger_entry=result.ledger_entry,
            events=result.events,
            refunded=refunded,
            refund_ref=result.ledger_entry.charge_ref,
            cancelled=result.subscription.status == SubscriptionStatus.CANCELLED,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_subscription(
        self, subscription_id: str, caller: CallerIdentity | None = None
    ) -> Subscription:
        async with self.session_factory() as session:
            row = await self._get_row(session, subscription_id)
            sub = Subscription.model_validate(row)
        self._authorize(caller, sub)
        return sub

    async def list_for_user(
        self, user_id: str, status: SubscriptionStatus | None = None
    ) -> list[Subscription]:
        stmt = (
            select(BillingSubscriptionTable)
            .where(BillingSubscriptionTable.user_id == user_id)
            .order_by(BillingSubscriptionTable.created_at.desc())
        )
        if status is not None:
            stmt = stmt.where(BillingSubscriptionTable.status == status.value)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Subscription.model_validate(r) for r in rows]

    async def get_ledger(
        self, subscription_id: str, caller: CallerIdentity | None = None
    ) -> list[LedgerEntry]:
        """Ledger entries in write order."""
        await self.get_subscription(subscription_id, caller)
        stmt = (
            select(BillingLedgerEntryTable)
            .where(BillingLedgerEntryTable.subscription_id == subscription_id)
            .order_by(BillingLedgerEntryTable.id)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [LedgerEntry.model_validate(r) for r in rows]

    async def has_feature(self, subscription_id: str, feature_key: str) -> bool:
        """Whether the subscription currently grants a plan feature."""
        sub = await self.get_subscription(subscription_id)
        if not sub.has_access(self.clock()):
            return False
        async with self.session_factory() as session:
            plan = await self._catalog(session).get_plan(sub.plan_id)
        return plan.has_feature(feature_key)

    async def get_limit(self, subscription_id: str, resource: str) -> int | None:
        """Plan limit for a resource; None is unlimited, 0 when access has lapsed."""
        sub = await self.get_subscription(subscription_id)
        if not sub.has_access(self.clock()):
            return 0
        async with self.session_factory() as session:
            plan = await self._catalog(session).get_plan(sub.plan_id)
        return plan.get_limit(resource)

    async def validate_coupon(
        self,
        code: str,
        user_id: str,
        plan_id: str,
        billing_period: BillingPeriod | str,
        currency: str | None = None,
    ) -> CouponValidation:
        """Check a coupon against a plan's price without redeeming it."""
        now = self.clock()
        currency = self._currency(currency)
        async with self.session_factory() as session:
            catalog = self._catalog(session)
            plan = await catalog.get_plan(plan_id)
            catalog.validate_for_subscription(plan, billing_period)
            price = await self._resolve_price(catalog, plan, currency, billing_period, now)
            return await self._coupons(session).validate(
                code, user_id, plan, billing_period, price, now
            )

    async def load_currency_precision(self, currencies: list[str]) -> None:
        """Refresh minor-unit precision for ``currencies`` from the currency service."""
        if self.converter is None:
            return
        try:
            await asyncio.wait_for(
                self.money.precision.load_from(self.converter, currencies),
                timeout=self.config.timeouts.currency_seconds,
            )
        except TimeoutError as e:
            raise CurrencyServiceError("Currency service timed out", currencies=currencies) from e

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def purge(self, subscription_id: str, caller: CallerIdentity) -> None:
        """Hard-delete a subscription with its ledger and reservations."""
        if not caller.is_admin:
            raise BillingPermissionError("purge subscriptions", caller.user_id)

        async with self.session_factory() as session:
            async with session.begin():
                await self._get_row(session, subscription_id)
                await session.execute(
                    delete(BillingLedgerEntryTable).where(
                        BillingLedgerEntryTable.subscription_id == subscription_id
                    )
                )
                await session.execute(
                    delete(BillingChargeReservationTable).where(
                        BillingChargeReservationTable.subscription_id == subscription_id
                    )
                )
                await session.execute(
                    delete(BillingSubscriptionTable).where(
                        BillingSubscriptionTable.subscription_id == subscription_id
                    )
                )

        log_audit_event(
            action="subscription.purged",
            category="billing",
            user_id=caller.user_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def _execute(
        self,
        subscription_id: str,
        operation: Operation,
        planner: Planner,
        caller: CallerIdentity | None = None,
        claim_token: str | None = None,
    ) -> SubscriptionResult:
        token = await self.claims.acquire(subscription_id, claim_token)
        try:
            async with self.session_factory() as session:
                row = await self._get_row(session, subscription_id)
                sub = Subscription.model_validate(row)
                self._authorize(caller, sub)
                ensure_transition(sub.status, operation)
                change = await planner(
                    _Context(
                        sub=sub,
                        session=session,
                        catalog=self._catalog(session),
                        coupons=self._coupons(session),
                        now=self.clock(),
                    )
                )

            change, external_ref, reservation_id = await self._settle(sub, operation, change)
            result = await self._persist(sub, operation, change, external_ref, reservation_id, token)
        except Exception:
            await self.claims.release_quietly(subscription_id, token)
            raise

        await self.dispatcher.dispatch(result.events)
        if change.failure is not None:
            change.failure.context["status"] = result.subscription.status.value
            change.failure.context["renewal_attempts"] = result.subscription.renewal_attempts
            raise change.failure
        return result

    async def _settle(
        self, sub: Subscription, operation: Operation, change: _Change
    ) -> tuple[_Change, str | None, str | None]:
        """Move money for a change. Returns the change to persist, the processor ref and reservation."""
        if change.charge is not None and self._minor(change.charge) > 0:
            reservation_id = await self._reserve(
                sub.subscription_id, sub.user_id, operation, change.charge
            )
            result = await self._charge(
                reservation_id, sub.subscription_id, sub.user_id, change.charge
            )
            if result.success:
                return change, result.charge_ref, reservation_id

            failure = PaymentFailedError(
                result.failure_reason or "Payment was declined",
                sub.subscription_id,
                operation=operation.value,
            )
            if change.on_decline is None:
                raise failure
            declined = change.on_decline(result.failure_reason)
            declined.failure = failure
            return declined, None, None

        if change.refund is not None and self._minor(change.refund) > 0:
            if sub.last_charge_ref is None:
                raise InvalidAmountError("Subscription has no charge to refund")
            reservation_id = await self._reserve(
                sub.subscription_id, sub.user_id, operation, change.refund
            )
            refund_ref = await self._refund(
                reservation_id, sub.subscription_id, sub.last_charge_ref, change.refund
            )
            return change, refund_ref, reservation_id

        return change, None, None

    async def _persist(
        self,
        sub: Subscription,
        operation: Operation,
        change: _Change,
        external_ref: str | None,
        reservation_id: str | None,
        token: str,
    ) -> SubscriptionResult:
        now = self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await self._get_row(session, sub.subscription_id)
                    if row.lock_token != token:
                        raise ConcurrentModificationError(sub.subscription_id)

                    status_before = row.status
                    change.apply(row, external_ref)
                    row.lock_token = None
                    row.locked_at = None

                    entry = self._ledger_row(row, change, status_before, external_ref, now)
                    session.add(entry)
                    if reservation_id:
                        await self._commit_reservation(session, reservation_id, external_ref)
                    await session.flush()

                    subscription = Subscription.model_validate(row)
                    ledger = LedgerEntry.model_validate(entry)
        except (SQLAlchemyError, BillingError) as e:
            if external_ref is None:
                if isinstance(e, StaleDataError):
                    raise ConcurrentModificationError(sub.subscription_id) from e
                raise
            amount = change.charge if change.refund is None else change.refund
            raise await self._integrity_failure(
                sub.subscription_id, operation, external_ref, reservation_id, amount, e
            ) from e

        logger.info(
            f"subscription.{operation.value}",
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            ledger_event=ledger.event_type.value,
            status_before=status_before,
            status_after=subscription.status.value,
            delta_minor=ledger.delta_minor,
            charged_minor=ledger.charged_minor,
            currency=ledger.currency,
        )

        events = [
            self._event(
                event_type,
                subscription,
                ledger_entry_id=ledger.entry_id,
                delta_minor=ledger.delta_minor,
                reason=change.reason,
                **change.metadata,
            )
            for event_type in change.event_types
        ]
        return SubscriptionResult(subscription=subscription, ledger_entry=ledger, events=events)

    def _ledger_row(
        self,
        row: BillingSubscriptionTable,
        change: _Change,
        status_before: str,
        external_ref: str | None,
        now: datetime,
    ) -> BillingLedgerEntryTable:
        charged = 0
        if external_ref and change.charge is not None:
            charged = self._minor(change.charge)

        if change.delta is not None:
            delta = self._minor(change.delta)
        elif external_ref and change.refund is not None:
            delta = -self._minor(change.refund)
        else:
            delta = charged

        return BillingLedgerEntryTable(
            entry_id=self._entry_id(),
            subscription_id=row.subscription_id,
            event_type=change.event_type.value,
            delta_minor=delta,
            charged_minor=charged,
            currency=row.currency,
            charge_ref=external_ref,
            status_before=status_before,
            status_after=row.status,
            plan_id=row.plan_id,
            reason=change.reason,
            metadata_json=change.metadata,
            created_at=now,
        )

    # ------------------------------------------------------------------
    # External money movement
    # ------------------------------------------------------------------

    async def _reserve(
        self, subscription_id: str, user_id: str, operation: Operation, amount: Money
    ) -> str:
        reservation_id = f"rsv_{uuid4().hex[:16]}"
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    BillingChargeReservationTable(
                        reservation_id=reservation_id,
                        subscription_id=subscription_id,
                        user_id=user_id,
                        operation=operation.value,
                        amount_minor=self._minor(amount),
                        currency=amount.currency.code,
                        status=ReservationStatus.RESERVED.value,
                        created_at=self.clock(),
                    )
                )
        return reservation_id

    async def _charge(
        self, reservation_id: str, subscription_id: str, user_id: str, amount: Money
    ) -> ChargeResult:
        try:
            result = await asyncio.wait_for(
                self.processor.charge(user_id, amount, idempotency_key=reservation_id),
                timeout=self.config.timeouts.payment_seconds,
            )
        except TimeoutError as e:
            await self._mark_reservation(
                reservation_id, ReservationStatus.UNKNOWN, failure_reason="charge timed out"
            )
            self.alerts.critical(
                "billing.payment_outcome_unknown",
                subscription_id=subscription_id,
                reservation_id=reservation_id,
                amount_minor=self._minor(amount),
                currency=amount.currency.code,
            )
            await self.dispatcher.alert(
                BillingEvents.PAYMENT_OUTCOME_UNKNOWN,
                subscription_id=subscription_id,
                reservation_id=reservation_id,
                amount_minor=self._minor(amount),
                currency=amount.currency.code,
            )
            raise PaymentOutcomeUnknownError(subscription_id, reservation_id) from e
        except Exception as e:
            await self._mark_reservation(
                reservation_id, ReservationStatus.UNKNOWN, failure_reason=str(e)
            )
            logger.error(
                "payment.charge_error",
                subscription_id=subscription_id,
                reservation_id=reservation_id,
                error=str(e),
            )
            raise PaymentProcessorError(
                "Payment processor error", subscription_id=subscription_id
            ) from e

        if not result.success:
            await self._mark_reservation(
                reservation_id, ReservationStatus.FAILED, failure_reason=result.failure_reason
            )
            logger.info(
                "payment.declined",
                subscription_id=subscription_id,
                reason=result.failure_reason,
            )
        return result

    async def _refund(
        self, reservation_id: str, subscription_id: str, charge_ref: str, amount: Money
    ) -> str | None:
        try:
            result = await asyncio.wait_for(
                self.processor.refund(charge_ref, amount),
                timeout=self.config.timeouts.payment_seconds,
            )
        except TimeoutError as e:
            await self._mark_reservation(
                reservation_id, ReservationStatus.UNKNOWN, failure_reason="refund timed out"
            )
            self.alerts.critical(
                "billing.refund_outcome_unknown",
                subscription_id=subscription_id,
                reservation_id=reservation_id,
                amount_minor=self._minor(amount),
            )
            raise PaymentProcessorError(
                "Refund timed out", subscription_id=subscription_id
            ) from e
        except Exception as e:
            await self._mark_reservation(
                reservation_id, ReservationStatus.UNKNOWN, failure_reason=str(e)
            )
            raise PaymentProcessorError(
                "Payment processor error", subscription_id=subscription_id
            ) from e

        if not result.success:
            await self._mark_reservation(
                reservation_id, ReservationStatus.FAILED, failure_reason=result.failure_reason
            )
            raise PaymentProcessorError(
                result.failure_reason or "Refund was rejected", subscription_id=subscription_id
            )
        return result.refund_ref or charge_ref

    async def _void_charge(
        self, subscription_id: str, reservation_id: str, charge_ref: str, amount: Money
    ) -> None:
        """Give back a charge whose subscription could not be created."""
        try:
            result = await asyncio.wait_for(
                self.processor.refund(charge_ref, amount),
                timeout=self.config.timeouts.payment_seconds,
            )
        except Exception as e:
            raise await self._integrity_failure(
                subscription_id, Operation.CREATE, charge_ref, reservation_id, amount, e
            ) from e
        if not result.success:
            raise await self._integrity_failure(
                subscription_id,
                Operation.CREATE,
                charge_ref,
                reservation_id,
                amount,
                PaymentProcessorError(result.failure_reason or "Void was rejected"),
            )
        await self._mark_reservation(
            reservation_id, ReservationStatus.FAILED, charge_ref=charge_ref, failure_reason="voided"
        )
        logger.warning("payment.voided", subscription_id=subscription_id, charge_ref=charge_ref)

    async def _integrity_failure(
        self,
        subscription_id: str,
        operation: Operation,
        external_ref: str,
        reservation_id: str | None,
        amount: Money | None,
        error: BaseException,
    ) -> BillingIntegrityError:
        """Alert on money that moved without a state record and build the error to raise."""
        amount_minor = self._minor(amount) if amount is not None else None
        currency = amount.currency.code if amount is not None else None
        self.alerts.critical(
            "billing.integrity_alert",
            subscription_id=subscription_id,
            operation=operation.value,
            reservation_id=reservation_id,
            charge_ref=external_ref,
            amount_minor=amount_minor,
            currency=currency,
            error=str(error),
        )
        if reservation_id:
            await self._mark_reservation(
                reservation_id,
                ReservationStatus.CHARGED,
                charge_ref=external_ref,
                failure_reason=str(error),
            )
        await self.dispatcher.alert(
            BillingEvents.INTEGRITY_ALERT,
            subscription_id=subscription_id,
            operation=operation.value,
            reservation_id=reservation_id,
            charge_ref=external_ref,
            amount_minor=amount_minor,
            currency=currency,
        )
        return BillingIntegrityError(
            "Payment was processed but could not be recorded",
            subscription_id=subscription_id,
            reservation_id=reservation_id,
            charge_ref=external_ref,
        )

    async def _commit_reservation(
        self, session: AsyncSession, reservation_id: str, external_ref: str | None
    ) -> None:
        reservation = await session.get(BillingChargeReservationTable, reservation_id)
        if reservation is not None:
            reservation.status = ReservationStatus.COMMITTED.value
            reservation.charge_ref = external_ref

    async def _mark_reservation(
        self,
        reservation_id: str,
        status: ReservationStatus,
        charge_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    reservation = await session.get(BillingChargeReservationTable, reservation_id)
                    if reservation is None:
                        return
                    reservation.status = status.value
                    if charge_ref:
                        reservation.charge_ref = charge_ref
                    if failure_reason:
                        reservation.failure_reason = failure_reason
        except SQLAlchemyError:
            logger.exception(
                "reservation.update_failed", reservation_id=reservation_id, status=status.value
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_price(
        self,
        catalog: CatalogService,
        plan: Plan,
        currency: str,
        period: BillingPeriod | str,
        at: datetime,
    ) -> Money:
        """Catalog price in ``currency``, converted from another currency if needed."""
        try:
            return catalog.get_price(plan, currency, period, at)
        except NoPriceForCombinationError:
            if self.converter is None:
                raise
            source = next(
                (
                    p
                    for p in sorted(plan.prices, key=lambda p: -p.version)
                    if p.billing_period == BillingPeriod(period) and p.is_effective(at)
                ),
                None,
            )
            if source is None:
                raise

        base = self._money(source.amount_minor, source.currency)
        try:
            converted = await asyncio.wait_for(
                self.converter.convert(base, source.currency, currency),
                timeout=self.config.timeouts.currency_seconds,
            )
        except TimeoutError as e:
            raise CurrencyServiceError(
                "Currency service timed out", from_currency=source.currency, to_currency=currency
            ) from e
        except BillingError:
            raise
        except Exception as e:
            raise CurrencyServiceError(
                "Currency conversion failed", from_currency=source.currency, to_currency=currency
            ) from e

        if converted.currency.code != currency:
            raise CurrencyServiceError(
                "Currency service returned the wrong currency",
                expected=currency,
                returned=converted.currency.code,
            )
        logger.info(
            "subscription.price_converted",
            plan_id=plan.plan_id,
            from_currency=source.currency,
            to_currency=currency,
            amount=str(converted.amount),
        )
        return self.money.round_money(converted)

    def _cycle_anchor(self, sub: Subscription, now: datetime) -> datetime:
        """Start of the next cycle: the end of the current one, or now when far behind."""
        if sub.status == SubscriptionStatus.PAST_DUE:
            return now
        anchor = sub.ends_at
        if sub.status == SubscriptionStatus.TRIALING and sub.trial_ends_at is not None:
            anchor = sub.trial_ends_at
        if add_billing_period(anchor, sub.billing_period) <= now:
            return now
        return anchor

    async def _awaiting_first_payment(self, session: AsyncSession, sub: Subscription) -> bool:
        """Whether the next charge is the first one after a trial, whatever the status now."""
        table = BillingLedgerEntryTable
        stmt = select(table.event_type, table.status_after).where(
            table.subscription_id == sub.subscription_id,
            table.event_type.in_([LedgerEventType.CREATED.value, LedgerEventType.RENEWED.value]),
        )
        rows = (await session.execute(stmt)).all()
        started_in_trial = any(
            event == LedgerEventType.CREATED.value and status == SubscriptionStatus.TRIALING.value
            for event, status in rows
        )
        renewed = any(event == LedgerEventType.RENEWED.value for event, _ in rows)
        return started_in_trial and not renewed

    def _authorize(self, caller: CallerIdentity | None, sub: Subscription) -> None:
        # Other users' subscriptions are reported as missing
        if caller is None or caller.is_admin:
            return
        if caller.user_id != sub.user_id:
            raise SubscriptionNotFoundError(sub.subscription_id)

    async def _get_row(self, session: AsyncSession, subscription_id: str) -> BillingSubscriptionTable:
        row = await session.get(BillingSubscriptionTable, subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(subscription_id)
        return row

    def _catalog(self, session: AsyncSession) -> CatalogService:
        return CatalogService(session, self.money, self.clock)

    def _coupons(self, session: AsyncSession) -> CouponService:
        return CouponService(session, self.money, self.clock)

    def _event(self, event_type: str, sub: Subscription, **extra: Any) -> DomainEvent:
        payload = {
            "subscription_id": sub.subscription_id,
            "user_id": sub.user_id,
            "plan_id": sub.plan_id,
            "status": sub.status.value,
            "billing_period": sub.billing_period.value,
            "currency": sub.currency,
            "ends_at": sub.ends_at.isoformat(),
            **extra,
        }
        return DomainEvent(event_type, payload, occurred_at=self.clock())

    def _currency(self, code: str | None) -> str:
        code = code or self.config.default_currency
        try:
            return self.money.validate_currency(code)
        except ValueError as e:
            raise ValidationError(
                f"Unknown currency {code}", "INVALID_CURRENCY", context={"currency": code}
            ) from e

    def _money(self, minor: int, currency: str) -> Money:
        return self.money.money_from_minor_units(minor, currency)

    def _minor(self, money: Money) -> int:
        return self.money.money_to_minor_units(money)

    @staticmethod
    def _entry_id() -> str:
        return f"led_{uuid4().hex[:16]}"


__all__ = ["SubscriptionService", "generate_subscription_id"]
