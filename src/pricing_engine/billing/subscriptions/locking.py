"""
Per-subscription claims.

A claim is a token written to the subscription row by a conditional UPDATE
that only matches when the row is unclaimed, its lease has expired, or the
caller already holds it. Every claim bumps the optimistic version so ORM
writes based on an older read fail with a stale-data error.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pricing_engine.billing.config import ConcurrencyConfig
from pricing_engine.billing.exceptions import (
    ConcurrentModificationError,
    SubscriptionNotFoundError,
)
from pricing_engine.billing.models import BillingSubscriptionTable

logger = structlog.get_logger(__name__)


class ClaimBusyError(Exception):
    """Subscription is claimed by someone else."""


def new_claim_token() -> str:
    return f"claim_{uuid4().hex}"


class SubscriptionClaims:
    """Acquire and release per-subscription claims."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConcurrencyConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))

    def claimable(self, token: str, now: datetime):
        """SQL condition: unclaimed, lease expired, or already held by ``token``."""
        stale_before = now - timedelta(seconds=self.config.lock_lease_seconds)
        table = BillingSubscriptionTable
        return or_(
            table.lock_token.is_(None),
            table.lock_token == token,
            and_(table.locked_at.is_not(None), table.locked_at < stale_before),
        )

    async def acquire(self, subscription_id: str, token: str | None = None) -> str:
        """
        Claim a subscription, retrying with exponential backoff.

        Raises:
            SubscriptionNotFoundError: No such subscription
            ConcurrentModificationError: Still claimed after the configured attempts
        """
        token = token or new_claim_token()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.lock_retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.lock_retry_min_seconds,
                min=self.config.lock_retry_min_seconds,
                max=self.config.lock_retry_max_seconds,
            ),
            retry=retry_if_exception_type(ClaimBusyError),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._try_acquire(subscription_id, token)
        except RetryError as e:
            logger.warning(
                "subscription.claim_contended",
                subscription_id=subscription_id,
                attempts=self.config.lock_retry_attempts,
            )
            raise ConcurrentModificationError(
                subscription_id, attempts=self.config.lock_retry_attempts
            ) from e
        return token

    async def _try_acquire(self, subscription_id: str, token: str) -> None:
        now = self.clock()
        table = BillingSubscriptionTable
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(table)
                    .where(table.subscription_id == subscription_id, self.claimable(token, now))
                    .values(lock_token=token, locked_at=now, version=table.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return
                exists = await session.execute(
                    select(table.subscription_id).where(table.subscription_id == subscription_id)
                )
                if exists.scalar_one_or_none() is None:
                    raise SubscriptionNotFoundError(subscription_id)
        raise ClaimBusyError(subscription_id)

    async def release(self, subscription_id: str, token: str) -> bool:
        """Release a claim held by ``token``. Returns False when it was not held."""
        table = BillingSubscriptionTable
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(table)
                    .where(table.subscription_id == subscription_id, table.lock_token == token)
                    .values(lock_token=None, locked_at=None, version=table.version + 1)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def release_quietly(self, subscription_id: str, token: str) -> None:
        """Release after a failure; an unreleased claim expires with its lease."""
        try:
            await self.release(subscription_id, token)
        except SQLAlchemyError:
            logger.exception(
                "subscription.claim_release_failed", subscription_id=subscription_id
            )


__all__ = ["ClaimBusyError", "SubscriptionClaims", "new_claim_token"]
