"""
Tests for the subscription lifecycle engine.

Each test runs against its own SQLite database with a frozen clock and an
in-memory payment processor.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from factories import FakeCurrencyConverter, get_coupon, make_coupon, make_plan
from moneyed import Money
from sqlalchemy.exc import OperationalError

from pricing_engine.billing.catalog.models import BillingPeriod, PriceCreateRequest
from pricing_engine.billing.catalog.service import CatalogService
from pricing_engine.billing.collaborators import CallerIdentity
from pricing_engine.billing.config import (
    DowngradePolicy,
    LifecyclePolicy,
    NegativeProrationPolicy,
    RenewalConfig,
)
from pricing_engine.billing.exceptions import (
    BillingIntegrityError,
    BillingPermissionError,
    ConcurrentModificationError,
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
from pricing_engine.billing.subscriptions.models import (
    LedgerEventType,
    RefundType,
    ReservationStatus,
    SubscriptionStatus,
)

pytestmark = pytest.mark.asyncio

MONTHLY = BillingPeriod.MONTHLY
JAN_1 = datetime(2026, 1, 1, tzinfo=UTC)
JAN_15 = datetime(2026, 1, 15, tzinfo=UTC)
MIDPOINT = datetime(2026, 1, 16, 12, tzinfo=UTC)
FEB_1 = datetime(2026, 2, 1, tzinfo=UTC)
MAR_1 = datetime(2026, 3, 1, tzinfo=UTC)

OWNER = CallerIdentity(user_id="user-1")
STRANGER = CallerIdentity(user_id="user-2")
ADMIN = CallerIdentity(user_id="ops", is_admin=True)


def usd(amount: str) -> Money:
    return Money(amount, "USD")


def with_policy(config, **policy):
    return config.model_copy(update={"policy": LifecyclePolicy(**policy)})


class SlowPrecisionConverter(FakeCurrencyConverter):
    async def precision_of(self, currency: str) -> int:
        await asyncio.sleep(1)
        return 2


class TestCreateSubscription:
    """Subscribing a user to a plan."""

    async def test_charges_first_period(self, service, basic_plan, processor, sink, fetch_reservations):
        result = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        sub = result.subscription

        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.starts_at == JAN_1
        assert sub.ends_at == FEB_1
        assert sub.price_minor == 3000
        assert sub.cycle_charged_minor == 3000
        assert sub.last_charge_ref == "ch_0001"
        assert sub.currency == "USD"

        entry = result.ledger_entry
        assert entry.event_type == LedgerEventType.CREATED
        assert entry.delta_minor == 0
        assert entry.charged_minor == 3000
        assert entry.status_before is None
        assert entry.status_after == SubscriptionStatus.ACTIVE

        assert processor.charged_minor == [3000]
        reservations = await fetch_reservations(sub.subscription_id)
        assert [r.status for r in reservations] == [ReservationStatus.COMMITTED]
        assert reservations[0].charge_ref == "ch_0001"
        assert processor.charges[0]["idempotency_key"] == reservations[0].reservation_id

        assert sink.event_types == ["subscription.created", "payment.succeeded"]
        assert sink.published[0][1]["subscription_id"] == sub.subscription_id

    async def test_declined_charge_creates_nothing(
        self, service, basic_plan, processor, sink, fetch_reservations
    ):
        processor.mode = "decline"
        with pytest.raises(PaymentFailedError) as exc_info:
            await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)

        assert exc_info.value.status_code == 402
        assert await service.list_for_user("user-1") == []
        subscription_id = exc_info.value.context["subscription_id"]
        reservations = await fetch_reservations(subscription_id)
        assert [r.status for r in reservations] == [ReservationStatus.FAILED]
        assert sink.published == []

    async def test_trial_starts_without_charge(self, service, trial_plan, processor):
        result = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        sub = result.subscription

        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_ends_at == JAN_15
        assert sub.ends_at == JAN_15
        assert sub.cycle_charged_minor == 0
        assert sub.last_charge_ref is None
        assert result.ledger_entry.charged_minor == 0
        assert processor.attempts == 0

    async def test_welcome_coupon(self, service, starter_plan, session_factory, clock, sink):
        await make_coupon(session_factory, clock, "WELCOME10", 10)

        result = await service.create_subscription(
            "user-1", starter_plan.plan_id, MONTHLY, coupon_code="welcome10"
        )

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.price_minor == 1999
        assert result.ledger_entry.delta_minor == -200
        assert result.ledger_entry.charged_minor == 1799
        assert result.ledger_entry.metadata["coupon_code"] == "WELCOME10"

        coupon = await get_coupon(session_factory, "WELCOME10")
        assert coupon.used_count == 1
        assert result.subscription.coupon_id == coupon.coupon_id
        assert sink.event_types == [
            "subscription.created",
            "payment.succeeded",
            "coupon.redeemed",
        ]

    async def test_invalid_coupon_charges_nothing(self, service, starter_plan, processor):
        with pytest.raises(ValidationError):
            await service.create_subscription(
                "user-1", starter_plan.plan_id, MONTHLY, coupon_code="NOPE"
            )
        assert processor.attempts == 0

    async def test_only_admins_subscribe_other_users(self, service, basic_plan):
        with pytest.raises(BillingPermissionError):
            await service.create_subscription(
                "user-1", basic_plan.plan_id, MONTHLY, caller=STRANGER
            )

        result = await service.create_subscription(
            "user-1", basic_plan.plan_id, MONTHLY, caller=ADMIN
        )
        assert result.subscription.user_id == "user-1"

    async def test_converted_price(self, make_service, basic_plan, processor):
        converter = FakeCurrencyConverter()
        service = make_service(currency_converter=converter)

        result = await service.create_subscription(
            "user-1", basic_plan.plan_id, MONTHLY, currency="eur"
        )

        assert result.subscription.currency == "EUR"
        assert result.subscription.price_minor == 2700
        assert processor.charges[0]["amount"] == Money("27.00", "EUR")
        assert converter.calls == 1

    async def test_missing_price_without_converter(self, service, basic_plan):
        with pytest.raises(NoPriceForCombinationError):
            await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY, currency="EUR")

    async def test_slow_converter(self, make_service, basic_plan):
        service = make_service(currency_converter=FakeCurrencyConverter(delay=1))
        with pytest.raises(CurrencyServiceError):
            await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY, currency="EUR")

    async def test_unknown_currency(self, service, basic_plan):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY, currency="QQQ")
        assert exc_info.value.error_code == "INVALID_CURRENCY"

    async def test_unsupported_period(self, service, starter_plan):
        with pytest.raises(ValidationError):
            await service.create_subscription("user-1", starter_plan.plan_id, BillingPeriod.YEARLY)

    async def test_charge_timeout(self, service, basic_plan, processor, sink):
        processor.mode = "timeout"
        with pytest.raises(PaymentOutcomeUnknownError) as exc_info:
            await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)

        assert exc_info.value.status_code == 504
        assert await service.list_for_user("user-1") == []
        assert sink.event_types == ["billing.payment_outcome_unknown"]


class TestUpgrade:
    """Immediate plan changes with proration."""

    async def test_midpoint_upgrade_charges_difference(
        self, service, basic_plan, pro_plan, processor, clock
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        clock.set(MIDPOINT)

        result = await service.upgrade(created.subscription.subscription_id, pro_plan.plan_id)
        sub = result.subscription

        assert result.ledger_entry.event_type == LedgerEventType.UPGRADED
        assert result.ledger_entry.delta_minor == 1000
        assert result.ledger_entry.charged_minor == 1000
        assert result.ledger_entry.charge_ref == "ch_0002"
        assert result.ledger_entry.metadata["remaining_fraction"] == "1/2"
        assert sub.plan_id == pro_plan.plan_id
        assert sub.price_minor == 5000
        assert sub.ends_at == FEB_1
        assert sub.cycle_charged_minor == 4000
        assert processor.charged_minor == [3000, 1000]

    async def test_upgrade_at_cycle_end_is_free(self, service, basic_plan, pro_plan, processor, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        clock.set(FEB_1)

        result = await service.upgrade(created.subscription.subscription_id, pro_plan.plan_id)

        assert result.ledger_entry.delta_minor == 0
        assert result.ledger_entry.charged_minor == 0
        assert result.subscription.plan_id == pro_plan.plan_id
        assert result.subscription.price_minor == 5000
        assert processor.charged_minor == [3000]

    async def test_cheaper_plan_becomes_credit(self, service, basic_plan, pro_plan, processor, clock):
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        clock.set(MIDPOINT)

        result = await service.upgrade(created.subscription.subscription_id, basic_plan.plan_id)

        assert result.ledger_entry.delta_minor == -1000
        assert result.ledger_entry.charged_minor == 0
        assert result.subscription.credit_minor == 1000
        assert processor.refunds == []

    async def test_cheaper_plan_refunded_under_refund_policy(
        self, make_service, billing_config, basic_plan, pro_plan, processor, clock
    ):
        service = make_service(
            config=with_policy(
                billing_config, negative_proration_policy=NegativeProrationPolicy.REFUND
            )
        )
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        clock.set(MIDPOINT)

        result = await service.upgrade(created.subscription.subscription_id, basic_plan.plan_id)

        assert result.ledger_entry.delta_minor == -1000
        assert result.ledger_entry.charge_ref == "re_0001"
        assert result.subscription.credit_minor == 0
        assert result.subscription.cycle_refunded_minor == 1000
        assert processor.refunds == [
            {"charge_ref": "ch_0001", "amount": usd("10.00"), "refund_ref": "re_0001"}
        ]

    async def test_without_proration_starts_new_cycle(
        self, service, basic_plan, pro_plan, processor, clock
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        clock.set(MIDPOINT)

        result = await service.upgrade(
            created.subscription.subscription_id, pro_plan.plan_id, prorate=False
        )

        assert result.subscription.starts_at == MIDPOINT
        assert result.subscription.ends_at == datetime(2026, 2, 16, 12, tzinfo=UTC)
        assert result.subscription.cycle_charged_minor == 5000
        assert processor.charged_minor == [3000, 5000]

    async def test_upgrade_ends_trial(self, service, trial_plan, pro_plan, processor, sink, clock):
        created = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        clock.advance(days=3)

        result = await service.upgrade(created.subscription.subscription_id, pro_plan.plan_id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.trial_ends_at == clock()
        assert processor.charged_minor == [5000]
        assert "subscription.trial_ended" in sink.event_types

    async def test_same_plan(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(SamePlanError):
            await service.upgrade(created.subscription.subscription_id, basic_plan.plan_id)

    async def test_declined_upgrade_changes_nothing(
        self, service, basic_plan, pro_plan, processor, clock
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        clock.set(MIDPOINT)
        processor.mode = "decline"

        with pytest.raises(PaymentFailedError):
            await service.upgrade(subscription_id, pro_plan.plan_id)

        sub = await service.get_subscription(subscription_id)
        assert sub.plan_id == basic_plan.plan_id
        assert len(await service.get_ledger(subscription_id)) == 1


class TestDowngrade:
    """Plan changes without proration."""

    async def test_end_of_cycle_downgrade(self, service, basic_plan, pro_plan, processor, clock, sink):
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id

        result = await service.downgrade(subscription_id, basic_plan.plan_id)
        assert result.subscription.plan_id == pro_plan.plan_id
        assert result.subscription.pending_plan_id == basic_plan.plan_id
        assert result.ledger_entry.event_type == LedgerEventType.DOWNGRADED
        assert result.ledger_entry.delta_minor == 0
        assert "subscription.downgrade_scheduled" in sink.event_types

        clock.set(FEB_1)
        renewed = await service.renew(subscription_id)
        assert renewed.subscription.plan_id == basic_plan.plan_id
        assert renewed.subscription.pending_plan_id is None
        assert renewed.subscription.price_minor == 3000
        assert renewed.subscription.ends_at == MAR_1
        assert processor.charged_minor == [5000, 3000]
        assert "subscription.downgraded" in sink.event_types

    async def test_immediate_downgrade(
        self, make_service, billing_config, basic_plan, pro_plan, processor
    ):
        service = make_service(
            config=with_policy(billing_config, downgrade_policy=DowngradePolicy.IMMEDIATE)
        )
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)

        result = await service.downgrade(created.subscription.subscription_id, basic_plan.plan_id)

        assert result.subscription.plan_id == basic_plan.plan_id
        assert result.subscription.price_minor == 3000
        assert result.subscription.pending_plan_id is None
        assert result.subscription.ends_at == FEB_1
        assert processor.charged_minor == [5000]

    async def test_downgrade_from_trial_activates(self, service, trial_plan, starter_plan):
        created = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        result = await service.downgrade(created.subscription.subscription_id, starter_plan.plan_id)
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.pending_plan_id == starter_plan.plan_id


class TestPauseResume:
    """Suspending and reactivating billing."""

    async def test_resume_keeps_remaining_time(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id

        clock.set(datetime(2026, 1, 11, tzinfo=UTC))
        paused = await service.pause(subscription_id)
        assert paused.subscription.status == SubscriptionStatus.PAUSED
        assert paused.subscription.paused_at == clock()

        clock.set(datetime(2026, 1, 16, tzinfo=UTC))
        resumed = await service.resume(subscription_id)
        assert resumed.subscription.status == SubscriptionStatus.ACTIVE
        assert resumed.subscription.starts_at == clock()
        assert resumed.subscription.ends_at == datetime(2026, 2, 6, tzinfo=UTC)
        assert resumed.subscription.paused_at is None
        assert resumed.ledger_entry.metadata["remaining_seconds"] == 21 * 86400

    async def test_double_pause(self, service, basic_plan, fetch_row):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id)

        with pytest.raises(InvalidTransitionError):
            await service.pause(subscription_id)

        row = await fetch_row(subscription_id)
        assert row.lock_token is None

    async def test_resume_at_must_be_future(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(ValidationError) as exc_info:
            await service.pause(
                created.subscription.subscription_id, resume_at=clock() - timedelta(hours=1)
            )
        assert exc_info.value.error_code == "INVALID_RESUME_AT"

    async def test_pause_drops_pending_plan(self, service, basic_plan, pro_plan):
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.downgrade(subscription_id, basic_plan.plan_id)

        paused = await service.pause(subscription_id)
        assert paused.subscription.pending_plan_id is None

    async def test_paused_cannot_renew(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id)
        clock.set(FEB_1)
        with pytest.raises(InvalidTransitionError):
            await service.renew(subscription_id)


class TestCancelAndExtend:
    async def test_cancel_keeps_access_until_period_end(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        clock.set(JAN_15)

        result = await service.cancel(subscription_id, reason="too expensive")

        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.subscription.cancelled_at == JAN_15
        assert result.subscription.cancel_reason == "too expensive"
        assert result.subscription.ends_at == FEB_1
        assert result.ledger_entry.reason == "too expensive"
        assert await service.has_feature(subscription_id, "api_access")

        clock.set(FEB_1)
        assert not await service.has_feature(subscription_id, "api_access")
        with pytest.raises(InvalidTransitionError):
            await service.renew(subscription_id)

    async def test_immediate_cancel(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        clock.set(JAN_15)

        result = await service.cancel(subscription_id, immediate=True)

        assert result.subscription.ends_at == JAN_15
        assert await service.get_limit(subscription_id, "projects") == 0

    async def test_cancel_twice(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.cancel(subscription_id)
        with pytest.raises(InvalidTransitionError):
            await service.cancel(subscription_id)

    async def test_extend(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        result = await service.extend(created.subscription.subscription_id, 7, reason="outage")
        assert result.subscription.ends_at == datetime(2026, 2, 8, tzinfo=UTC)
        assert result.ledger_entry.event_type == LedgerEventType.EXTENDED
        assert result.ledger_entry.delta_minor == 0

    async def test_extend_trial(self, service, trial_plan):
        created = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        result = await service.extend(created.subscription.subscription_id, 7)
        assert result.subscription.trial_ends_at == datetime(2026, 1, 22, tzinfo=UTC)
        assert result.subscription.ends_at == datetime(2026, 1, 22, tzinfo=UTC)

    async def test_extend_needs_positive_days(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(InvalidAmountError):
            await service.extend(created.subscription.subscription_id, 0)


class TestRenew:
    """Starting the next billing cycle."""

    async def test_not_due(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(InvalidTransitionError, match="current period has not ended"):
            await service.renew(created.subscription.subscription_id)

    async def test_renews_at_period_end(self, service, basic_plan, processor, sink, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        clock.set(FEB_1)

        result = await service.renew(created.subscription.subscription_id)

        assert result.subscription.starts_at == FEB_1
        assert result.subscription.ends_at == MAR_1
        assert result.subscription.cycle_charged_minor == 3000
        assert result.subscription.last_charge_ref == "ch_0002"
        assert result.ledger_entry.event_type == LedgerEventType.RENEWED
        assert result.ledger_entry.delta_minor == 3000
        assert result.ledger_entry.charged_minor == 3000
        assert processor.charged_minor == [3000, 3000]
        assert sink.event_types[-2:] == ["subscription.renewed", "payment.succeeded"]

    async def test_declines_lead_to_expiry(self, service, basic_plan, processor, sink, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "decline"

        clock.set(FEB_1)
        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id)
        assert exc_info.value.context["status"] == "past_due"
        assert exc_info.value.context["renewal_attempts"] == 1
        sub = await service.get_subscription(subscription_id)
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.next_retry_at == FEB_1 + timedelta(hours=24)
        assert sink.event_types[-2:] == ["payment.failed", "subscription.past_due"]

        clock.set(sub.next_retry_at)
        with pytest.raises(PaymentFailedError):
            await service.renew(subscription_id)
        sub = await service.get_subscription(subscription_id)
        assert sub.renewal_attempts == 2
        assert sub.next_retry_at == clock() + timedelta(hours=72)

        clock.set(sub.next_retry_at)
        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id)
        assert exc_info.value.context["status"] == "expired"
        sub = await service.get_subscription(subscription_id)
        assert sub.status == SubscriptionStatus.EXPIRED
        assert sub.next_retry_at is None
        assert sink.event_types[-2:] == ["payment.failed", "subscription.expired"]

        ledger = await service.get_ledger(subscription_id)
        assert [e.event_type for e in ledger] == [
            LedgerEventType.CREATED,
            LedgerEventType.RENEWAL_FAILED,
            LedgerEventType.RENEWAL_FAILED,
            LedgerEventType.EXPIRED,
        ]
        assert all(e.delta_minor == 0 for e in ledger[1:])

        with pytest.raises(InvalidTransitionError):
            await service.renew(subscription_id)

    async def test_single_attempt_limit_still_passes_through_past_due(
        self, make_service, billing_config, basic_plan, processor, clock, sink
    ):
        service = make_service(
            config=billing_config.model_copy(update={"renewal": RenewalConfig(max_attempts=1)})
        )
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "decline"

        clock.set(FEB_1)
        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id)
        assert exc_info.value.context["status"] == "past_due"
        assert sink.event_types[-1] == "subscription.past_due"

        clock.set(FEB_1 + timedelta(hours=24))
        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id)
        assert exc_info.value.context["status"] == "expired"

    async def test_resume_restarts_dunning(
        self, make_service, billing_config, basic_plan, processor, clock
    ):
        service = make_service(
            config=billing_config.model_copy(update={"renewal": RenewalConfig(max_attempts=2)})
        )
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "decline"
        clock.set(FEB_1)
        with pytest.raises(PaymentFailedError):
            await service.renew(subscription_id)

        clock.set(datetime(2026, 2, 2, tzinfo=UTC))
        await service.pause(subscription_id)
        clock.set(datetime(2026, 2, 3, tzinfo=UTC))
        resumed = await service.resume(subscription_id)
        assert resumed.subscription.status == SubscriptionStatus.ACTIVE
        assert resumed.subscription.renewal_attempts == 0
        assert resumed.subscription.next_retry_at is None
        assert resumed.subscription.ends_at == clock()

        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id)
        assert exc_info.value.context["status"] == "past_due"
        sub = await service.get_subscription(subscription_id)
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.renewal_attempts == 1

    async def test_recovery_from_past_due(self, service, basic_plan, processor, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "decline"
        clock.set(FEB_1)
        with pytest.raises(PaymentFailedError):
            await service.renew(subscription_id)

        processor.mode = "succeed"
        clock.set(datetime(2026, 2, 2, tzinfo=UTC))
        result = await service.renew(subscription_id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.starts_at == clock()
        assert result.subscription.ends_at == datetime(2026, 3, 2, tzinfo=UTC)
        assert result.subscription.renewal_attempts == 0
        assert result.subscription.next_retry_at is None

    async def test_trial_not_over(self, service, trial_plan):
        created = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        with pytest.raises(InvalidTransitionError, match="trial has not ended"):
            await service.renew(created.subscription.subscription_id)

    async def test_trial_coupon_discounts_first_payment(
        self, service, trial_plan, processor, session_factory, clock, sink
    ):
        await make_coupon(session_factory, clock, "WELCOME10", 10)
        created = await service.create_subscription(
            "user-1", trial_plan.plan_id, MONTHLY, coupon_code="WELCOME10"
        )
        subscription_id = created.subscription.subscription_id
        assert processor.attempts == 0
        assert (await get_coupon(session_factory, "WELCOME10")).used_count == 1

        clock.set(JAN_15)
        first = await service.renew(subscription_id)
        assert first.subscription.status == SubscriptionStatus.ACTIVE
        assert first.subscription.starts_at == JAN_15
        assert first.subscription.ends_at == datetime(2026, 2, 15, tzinfo=UTC)
        assert first.ledger_entry.charged_minor == 1799
        assert "subscription.trial_ended" in sink.event_types

        clock.set(datetime(2026, 2, 15, tzinfo=UTC))
        second = await service.renew(subscription_id)
        assert second.ledger_entry.charged_minor == 1999
        assert processor.charged_minor == [1799, 1999]

    async def test_trial_coupon_survives_downgrade_in_trial(
        self, service, trial_plan, starter_plan, processor, session_factory, clock, sink
    ):
        await make_coupon(session_factory, clock, "WELCOME10", 10)
        created = await service.create_subscription(
            "user-1", trial_plan.plan_id, MONTHLY, coupon_code="WELCOME10"
        )
        subscription_id = created.subscription.subscription_id
        downgraded = await service.downgrade(subscription_id, starter_plan.plan_id)
        assert downgraded.subscription.status == SubscriptionStatus.ACTIVE

        clock.set(JAN_15)
        first = await service.renew(subscription_id)
        assert first.subscription.plan_id == starter_plan.plan_id
        assert first.ledger_entry.charged_minor == 1799
        assert first.ledger_entry.metadata["discount_minor"] == 200
        assert "subscription.trial_ended" in sink.event_types

        clock.set(datetime(2026, 2, 15, tzinfo=UTC))
        await service.renew(subscription_id)
        assert processor.charged_minor == [1799, 1999]
        assert sink.event_types.count("subscription.trial_ended") == 1

    async def test_recurring_coupon(self, service, starter_plan, processor, session_factory, clock):
        await make_coupon(session_factory, clock, "LOYAL", 25, first_payment_only=False)
        created = await service.create_subscription(
            "user-1", starter_plan.plan_id, MONTHLY, coupon_code="LOYAL"
        )
        clock.set(FEB_1)
        await service.renew(created.subscription.subscription_id)
        assert processor.charged_minor == [1499, 1499]

    async def test_credit_reduces_renewal(self, service, basic_plan, pro_plan, processor, clock):
        created = await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        clock.set(MIDPOINT)
        await service.upgrade(subscription_id, basic_plan.plan_id)

        clock.set(FEB_1)
        result = await service.renew(subscription_id)

        assert result.subscription.credit_minor == 0
        assert result.ledger_entry.charged_minor == 2000
        assert result.ledger_entry.metadata["credit_applied_minor"] == 1000
        assert processor.charged_minor == [5000, 2000]

    async def test_renewal_keeps_agreed_price(
        self, service, basic_plan, processor, session_factory, clock
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        async with session_factory() as session:
            async with session.begin():
                await CatalogService(session, clock=clock).change_price(
                    basic_plan.plan_id,
                    PriceCreateRequest(currency="USD", billing_period=MONTHLY, amount_minor=3500),
                )

        clock.set(FEB_1)
        await service.renew(created.subscription.subscription_id)
        assert processor.charged_minor == [3000, 3000]

    async def test_charge_timeout_leaves_reservation_unknown(
        self, service, basic_plan, processor, sink, clock, fetch_reservations
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "timeout"
        clock.set(FEB_1)

        with pytest.raises(PaymentOutcomeUnknownError):
            await service.renew(subscription_id)

        sub = await service.get_subscription(subscription_id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.ends_at == FEB_1
        reservations = await fetch_reservations(subscription_id)
        assert reservations[-1].status == ReservationStatus.UNKNOWN
        assert sink.event_types[-1] == "billing.payment_outcome_unknown"

    async def test_processor_error(self, service, basic_plan, processor, clock, fetch_reservations):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.mode = "error"
        clock.set(FEB_1)

        with pytest.raises(PaymentProcessorError) as exc_info:
            await service.renew(subscription_id)

        assert exc_info.value.status_code == 502
        reservations = await fetch_reservations(subscription_id)
        assert reservations[-1].status == ReservationStatus.UNKNOWN

    async def test_unrecorded_charge_raises_integrity_error(
        self, service, basic_plan, processor, sink, clock, fetch_reservations, fetch_row, monkeypatch
    ):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        clock.set(FEB_1)

        def broken_ledger(*args, **kwargs):
            raise OperationalError("INSERT INTO billing_ledger_entries", {}, Exception("disk full"))

        monkeypatch.setattr(service, "_ledger_row", broken_ledger)

        with pytest.raises(BillingIntegrityError) as exc_info:
            await service.renew(subscription_id)

        assert exc_info.value.status_code == 500
        assert exc_info.value.context["charge_ref"] == "ch_0002"
        reservations = await fetch_reservations(subscription_id)
        assert reservations[-1].status == ReservationStatus.CHARGED
        assert reservations[-1].charge_ref == "ch_0002"
        assert sink.event_types[-1] == "billing.integrity_alert"

        row = await fetch_row(subscription_id)
        assert row.ends_at == FEB_1
        assert row.lock_token is None


class TestRefund:
    """Refunds of the current cycle."""

    async def test_partial_refund(self, service, basic_plan, processor):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)

        result = await service.refund(
            created.subscription.subscription_id, RefundType.PARTIAL, amount=usd("5.00")
        )

        assert result.refunded == usd("5.00")
        assert result.refund_ref == "re_0001"
        assert result.cancelled is False
        assert result.ledger_entry.event_type == LedgerEventType.REFUNDED
        assert result.ledger_entry.delta_minor == -500
        assert result.ledger_entry.charged_minor == 0
        assert result.subscription.cycle_refunded_minor == 500
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert processor.refunds[0]["charge_ref"] == "ch_0001"

    async def test_full_refund_cancels(self, service, basic_plan, clock, sink):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.refund(subscription_id, RefundType.PARTIAL, amount=usd("5.00"))
        clock.set(JAN_15)

        result = await service.refund(subscription_id, RefundType.FULL, reason="requested")

        assert result.refunded == usd("25.00")
        assert result.cancelled is True
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.subscription.ends_at == JAN_15
        assert result.subscription.refundable_minor == 0
        assert sink.event_types[-2:] == ["payment.refunded", "subscription.cancelled"]

    async def test_full_refund_without_cancel(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        result = await service.refund(created.subscription.subscription_id, cancel=False)
        assert result.refunded == usd("30.00")
        assert result.subscription.status == SubscriptionStatus.ACTIVE

    async def test_prorated_refund(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        clock.set(MIDPOINT)
        result = await service.refund(created.subscription.subscription_id, "prorated")
        assert result.refunded == usd("15.00")
        assert result.cancelled is False

    async def test_refund_over_balance(self, service, basic_plan, processor):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(InvalidAmountError):
            await service.refund(
                created.subscription.subscription_id, RefundType.PARTIAL, amount=usd("40.00")
            )
        assert processor.refunds == []

    async def test_refund_currency_mismatch(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        with pytest.raises(CurrencyMismatchError):
            await service.refund(
                created.subscription.subscription_id,
                RefundType.PARTIAL,
                amount=Money("5.00", "EUR"),
            )

    async def test_nothing_to_refund_in_trial(self, service, trial_plan):
        created = await service.create_subscription("user-1", trial_plan.plan_id, MONTHLY)
        with pytest.raises(InvalidAmountError):
            await service.refund(created.subscription.subscription_id)

    async def test_rejected_refund(self, service, basic_plan, processor, fetch_reservations):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        processor.refund_mode = "reject"

        with pytest.raises(PaymentProcessorError):
            await service.refund(subscription_id)

        sub = await service.get_subscription(subscription_id)
        assert sub.cycle_refunded_minor == 0
        assert sub.status == SubscriptionStatus.ACTIVE
        reservations = await fetch_reservations(subscription_id)
        assert sorted(r.status.value for r in reservations) == ["committed", "failed"]


class TestClaims:
    """Per-subscription claims serialise state changes."""

    async def test_claimed_subscription_is_busy(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.claims.acquire(subscription_id)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await service.pause(subscription_id)
        assert exc_info.value.status_code == 409

    async def test_holder_can_proceed(self, service, basic_plan, fetch_row):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        token = await service.claims.acquire(subscription_id)

        result = await service.pause(subscription_id, claim_token=token)

        assert result.subscription.status == SubscriptionStatus.PAUSED
        row = await fetch_row(subscription_id)
        assert row.lock_token is None
        assert row.locked_at is None

    async def test_stale_claim_expires(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.claims.acquire(subscription_id)

        clock.advance(seconds=301)
        result = await service.pause(subscription_id)
        assert result.subscription.status == SubscriptionStatus.PAUSED

    async def test_release(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        token = await service.claims.acquire(subscription_id)

        assert await service.claims.release(subscription_id, token)
        assert not await service.claims.release(subscription_id, token)
        await service.pause(subscription_id)

    async def test_unknown_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.pause("sub_missing")


class TestQueries:
    """Read side and administration."""

    async def test_owner_only(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id

        assert (await service.get_subscription(subscription_id, OWNER)).user_id == "user-1"
        assert (await service.get_subscription(subscription_id, ADMIN)).user_id == "user-1"
        with pytest.raises(SubscriptionNotFoundError):
            await service.get_subscription(subscription_id, STRANGER)
        with pytest.raises(SubscriptionNotFoundError):
            await service.cancel(subscription_id, caller=STRANGER)

    async def test_ledger_in_write_order(self, service, basic_plan, clock):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id)
        clock.advance(days=1)
        await service.resume(subscription_id)

        ledger = await service.get_ledger(subscription_id, OWNER)
        assert [e.event_type for e in ledger] == [
            LedgerEventType.CREATED,
            LedgerEventType.PAUSED,
            LedgerEventType.RESUMED,
        ]
        assert [e.status_after for e in ledger] == [
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.ACTIVE,
        ]

    async def test_features_and_limits(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id

        assert await service.has_feature(subscription_id, "api_access")
        assert not await service.has_feature(subscription_id, "priority_support")
        assert await service.get_limit(subscription_id, "projects") == 5
        assert await service.get_limit(subscription_id, "seats") is None
        assert await service.get_limit(subscription_id, "storage") == 0

    async def test_paused_has_no_access(self, service, basic_plan):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id)
        assert not await service.has_feature(subscription_id, "api_access")

    async def test_list_for_user(self, service, basic_plan, pro_plan):
        first = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        await service.create_subscription("user-1", pro_plan.plan_id, MONTHLY)
        await service.create_subscription("user-2", pro_plan.plan_id, MONTHLY)
        await service.cancel(first.subscription.subscription_id)

        assert len(await service.list_for_user("user-1")) == 2
        active = await service.list_for_user("user-1", SubscriptionStatus.ACTIVE)
        assert [s.plan_id for s in active] == [pro_plan.plan_id]

    async def test_validate_coupon(self, service, starter_plan, session_factory, clock):
        await make_coupon(session_factory, clock, "WELCOME10", 10)
        validation = await service.validate_coupon(
            "WELCOME10", "user-1", starter_plan.plan_id, MONTHLY
        )
        assert validation.discount == usd("2.00")
        assert validation.final_price == usd("17.99")
        assert (await get_coupon(session_factory, "WELCOME10")).used_count == 0

    async def test_purge(self, service, basic_plan, fetch_reservations):
        created = await service.create_subscription("user-1", basic_plan.plan_id, MONTHLY)
        subscription_id = created.subscription.subscription_id

        with pytest.raises(BillingPermissionError):
            await service.purge(subscription_id, OWNER)

        await service.purge(subscription_id, ADMIN)
        with pytest.raises(SubscriptionNotFoundError):
            await service.get_subscription(subscription_id)
        assert await fetch_reservations(subscription_id) == []

    async def test_load_currency_precision(self, make_service):
        service = make_service(currency_converter=FakeCurrencyConverter(precision={"EUR": 3}))
        await service.load_currency_precision(["EUR"])
        assert service.money.get_currency_precision("EUR") == 3

    async def test_slow_precision_lookup(self, make_service):
        service = make_service(currency_converter=SlowPrecisionConverter())
        with pytest.raises(CurrencyServiceError):
            await service.load_currency_precision(["EUR"])


class TestPlanCatalogInteraction:
    async def test_deprecated_plan_keeps_subscribers(self, service, session_factory, clock, processor):
        plan = await make_plan(session_factory, clock, "legacy", {MONTHLY: 1000})
        created = await service.create_subscription("user-1", plan.plan_id, MONTHLY)
        async with session_factory() as session:
            async with session.begin():
                await CatalogService(session, clock=clock).deprecate_plan(plan.plan_id)

        clock.set(FEB_1)
        await service.renew(created.subscription.subscription_id)
        assert processor.charged_minor == [1000, 1000]
