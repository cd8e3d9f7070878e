"""
Billing scheduler.

Finds subscriptions whose renewal, retry or automatic resume is due and runs
them through the engine. Each due row is claimed with a conditional UPDATE that
repeats the due condition, so two sweeps running at once, or back to back,
process a subscription only once.
"""

from dataclasses import asdict, dataclass
from datetime import datetime

import structlog
from sqlalchemy import and_, or_, select, update

from pricing_engine.billing.exceptions import BillingError, PaymentFailedError
from pricing_engine.billing.models import BillingSubscriptionTable
from pricing_engine.billing.subscriptions.locking import new_claim_token
from pricing_engine.billing.subscriptions.models import SubscriptionStatus
from pricing_engine.billing.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    """Counts for one sweep."""

    due: int = 0
    renewed: int = 0
    resumed: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def due_condition(now: datetime):
    """SQL condition matching subscriptions the scheduler must process at ``now``."""
    table = BillingSubscriptionTable
    return or_(
        and_(table.status == SubscriptionStatus.ACTIVE.value, table.ends_at <= now),
        and_(
            table.status == SubscriptionStatus.TRIALING.value,
            table.trial_ends_at.is_not(None),
            table.trial_ends_at <= now,
        ),
        and_(
            table.status == SubscriptionStatus.PAST_DUE.value,
            table.next_retry_at.is_not(None),
            table.next_retry_at <= now,
        ),
        and_(
            table.status == SubscriptionStatus.PAUSED.value,
            table.resume_at.is_not(None),
            table.resume_at <= now,
        ),
    )


class BillingScheduler:
    """Periodic renewal sweep over due subscriptions."""

    def __init__(self, service: SubscriptionService, batch_size: int = 500) -> None:
        self.service = service
        self.session_factory = service.session_factory
        self.batch_size = batch_size

    async def find_due(self, now: datetime | None = None) -> list[str]:
        """Ids of subscriptions due at ``now``, oldest period end first."""
        now = now or self.service.clock()
        table = BillingSubscriptionTable
        stmt = (
            select(table.subscription_id)
            .where(due_condition(now))
            .order_by(table.ends_at, table.subscription_id)
            .limit(self.batch_size)
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Process every due subscription once.

        Paused subscriptions whose resume time has come are resumed; all others
        are renewed. Declined renewals count as failed, or expired once the
        attempt limit is reached. Rows another worker holds are skipped. An error
        on one subscription is logged and counted without ending the sweep.
        """
        now = now or self.service.clock()
        result = SweepResult()
        due = await self.find_due(now)
        result.due = len(due)

        for subscription_id in due:
            token = new_claim_token()
            try:
                status = await self._claim_due(subscription_id, token, now)
                if status is None:
                    result.skipped += 1
                    continue
                if status == SubscriptionStatus.PAUSED:
                    await self.service.resume(subscription_id, claim_token=token)
                    result.resumed += 1
                else:
                    await self.service.renew(subscription_id, claim_token=token)
                    result.renewed += 1
            except PaymentFailedError as e:
                if e.context.get("status") == SubscriptionStatus.EXPIRED.value:
                    result.expired += 1
                else:
                    result.failed += 1
            except BillingError as e:
                result.errors += 1
                logger.error(
                    "billing.sweep_item_failed",
                    subscription_id=subscription_id,
                    error_code=e.error_code,
                    error=e.message,
                )
            except Exception:
                result.errors += 1
                logger.exception("billing.sweep_item_crashed", subscription_id=subscription_id)

        logger.info("billing.sweep_completed", now=now.isoformat(), **result.to_dict())
        return result

    async def _claim_due(
        self, subscription_id: str, token: str, now: datetime
    ) -> SubscriptionStatus | None:
        """Claim a row only if it is still due and unclaimed. Returns its status."""
        table = BillingSubscriptionTable
        async with self.session_factory() as session:
            async with session.begin():
                claimed = await session.execute(
                    update(table)
                    .where(
                        table.subscription_id == subscription_id,
                        due_condition(now),
                        self.service.claims.claimable(token, now),
                    )
                    .values(lock_token=token, locked_at=now, version=table.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    return None
                status = await session.execute(
                    select(table.status).where(table.subscription_id == subscription_id)
                )
                return SubscriptionStatus(status.scalar_one())


__all__ = ["BillingScheduler", "SweepResult", "due_condition"]
