"""
Pytest fixtures for billing engine tests.
"""

import pytest
import pytest_asyncio
from factories import (
    FakeCurrencyConverter,
    FakeNotificationSink,
    FakePaymentProcessor,
    make_plan,
)
from sqlalchemy import select

from pricing_engine.billing.catalog.models import BillingPeriod
from pricing_engine.billing.models import BillingChargeReservationTable, BillingSubscriptionTable
from pricing_engine.billing.reconciliation_service import ReconciliationService
from pricing_engine.billing.scheduler import BillingScheduler
from pricing_engine.billing.subscriptions.models import ChargeReservation
from pricing_engine.billing.subscriptions.service import SubscriptionService

MONTHLY = BillingPeriod.MONTHLY
YEARLY = BillingPeriod.YEARLY


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def sink():
    return FakeNotificationSink()


@pytest.fixture
def converter():
    return FakeCurrencyConverter()


@pytest.fixture
def make_service(session_factory, processor, sink, billing_config, clock):
    """Build a subscription service; keyword arguments override the defaults."""

    def _make(**overrides) -> SubscriptionService:
        kwargs = {
            "notification_sink": sink,
            "config": billing_config,
            "clock": clock,
        }
        kwargs.update(overrides)
        return SubscriptionService(session_factory, processor, **kwargs)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def scheduler(service):
    return BillingScheduler(service)


@pytest.fixture
def reconciliation(session_factory, processor, sink, billing_config, clock):
    return ReconciliationService(
        session_factory, processor, notification_sink=sink, config=billing_config, clock=clock
    )


@pytest_asyncio.fixture
async def basic_plan(session_factory, clock):
    """Basic: 30.00 USD monthly, 300.00 USD yearly."""
    return await make_plan(
        session_factory,
        clock,
        "basic",
        {MONTHLY: 3000, YEARLY: 30000},
        features={"api_access": "true", "priority_support": "false"},
        limits={"projects": 5, "seats": None},
        sort_order=1,
    )


@pytest_asyncio.fixture
async def pro_plan(session_factory, clock):
    """Pro: 50.00 USD monthly."""
    return await make_plan(
        session_factory,
        clock,
        "pro",
        {MONTHLY: 5000},
        features={"api_access": "true", "priority_support": "true"},
        limits={"projects": None, "seats": None},
        sort_order=2,
    )


@pytest_asyncio.fixture
async def starter_plan(session_factory, clock):
    """Starter: 19.99 USD monthly."""
    return await make_plan(session_factory, clock, "starter", {MONTHLY: 1999}, sort_order=0)


@pytest_asyncio.fixture
async def trial_plan(session_factory, clock):
    """Starter with a 14 day trial: 19.99 USD monthly."""
    return await make_plan(
        session_factory, clock, "starter-trial", {MONTHLY: 1999}, trial_days=14
    )


@pytest.fixture
def fetch_reservations(session_factory):
    """Load the charge reservations written for a subscription."""

    async def _fetch(subscription_id: str) -> list[ChargeReservation]:
        table = BillingChargeReservationTable
        async with session_factory() as session:
            rows = (
                await session.execute(
                    select(table)
                    .where(table.subscription_id == subscription_id)
                    .order_by(table.created_at, table.reservation_id)
                )
            ).scalars()
            return [ChargeReservation.model_validate(r) for r in rows]

    return _fetch


@pytest.fixture
def fetch_row(session_factory):
    """Load the raw subscription row, including claim columns."""

    async def _fetch(subscription_id: str) -> BillingSubscriptionTable:
        async with session_factory() as session:
            return await session.get(BillingSubscriptionTable, subscription_id)

    return _fetch
