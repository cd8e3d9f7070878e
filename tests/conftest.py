"""
Global pytest configuration and fixtures for pricing engine tests.

Every test gets its own file-based SQLite database so concurrent sessions
share one schema, and a frozen clock the engine reads instead of wall time.
"""

import os
from datetime import UTC, datetime, timedelta

# Configure the engine for tests before any settings are loaded
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.pop("DATABASE__URL", None)

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from pricing_engine import db as db_module
from pricing_engine.billing.config import (
    BillingConfig,
    ConcurrencyConfig,
    TimeoutConfig,
    set_billing_config,
)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def start_time() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture
def clock(start_time):
    """Frozen clock starting at 2026-01-01 00:00 UTC."""
    return FrozenClock(start_time)


@pytest.fixture
def billing_config():
    """Billing configuration with fast claim retries and short external timeouts."""
    config = BillingConfig(
        concurrency=ConcurrencyConfig(
            lock_retry_attempts=3,
            lock_retry_min_seconds=0.01,
            lock_retry_max_seconds=0.05,
            lock_lease_seconds=300,
        ),
        timeouts=TimeoutConfig(
            payment_seconds=0.2,
            currency_seconds=0.2,
            notification_seconds=0.2,
        ),
    )
    set_billing_config(config)
    yield config
    set_billing_config(None)


@pytest_asyncio.fixture
async def async_db_engine(tmp_path):
    """Async engine on a per-test SQLite file, installed as the module engine."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    db_module.configure_engine(engine)
    await db_module.create_all_tables_async()
    try:
        yield engine
    finally:
        await engine.dispose()
        db_module._async_engine = None
        db_module._async_session_maker = None


@pytest.fixture
def session_factory(async_db_engine):
    return db_module.get_session_factory()
