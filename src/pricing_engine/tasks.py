"""
Central task registration module for Celery.

Each task runs its coroutine on a fresh event loop with its own engine, so
pooled connections never outlive the loop that opened them.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pricing_engine.billing.config import get_billing_config
from pricing_engine.billing.dependencies import BillingCollaborators, load_collaborators
from pricing_engine.billing.reconciliation_service import ReconciliationService
from pricing_engine.billing.scheduler import BillingScheduler
from pricing_engine.billing.subscriptions.service import SubscriptionService
from pricing_engine.celery_app import celery_app
from pricing_engine.db import get_async_database_url
from pricing_engine.settings import settings

logger = structlog.get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


async def run_renewal_sweep(
    collaborators: BillingCollaborators, session_factory: SessionFactory
) -> dict[str, Any]:
    """Renew, retry and auto-resume every due subscription."""
    service = SubscriptionService(
        session_factory,
        collaborators.payment_processor,
        currency_converter=collaborators.currency_converter,
        notification_sink=collaborators.notification_sink,
        config=get_billing_config(),
        clock=collaborators.clock,
    )
    result = await BillingScheduler(service).run_sweep()
    return result.to_dict()


async def run_reconciliation(
    collaborators: BillingCollaborators, session_factory: SessionFactory
) -> dict[str, Any]:
    """Resolve charge reservations left open past the stale threshold."""
    service = ReconciliationService(
        session_factory,
        collaborators.payment_processor,
        notification_sink=collaborators.notification_sink,
        config=get_billing_config(),
        clock=collaborators.clock,
    )
    return await service.reconcile()


def _load_worker_collaborators() -> BillingCollaborators | None:
    path = settings.billing.collaborators_factory
    return load_collaborators(path) if path else None


def _run_with_engine(
    job: Callable[[BillingCollaborators, SessionFactory], Awaitable[dict[str, Any]]],
    collaborators: BillingCollaborators,
) -> dict[str, Any]:
    async def _run() -> dict[str, Any]:
        engine = create_async_engine(get_async_database_url(), poolclass=NullPool)
        try:
            factory = async_sessionmaker(
                bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
            )
            return await job(collaborators, factory)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


@celery_app.task(name="billing.renewal_sweep")
def renewal_sweep_task() -> dict[str, Any]:
    """Periodic task running the renewal sweep."""
    collaborators = _load_worker_collaborators()
    if collaborators is None:
        logger.warning("billing.renewal_sweep.disabled", reason="no collaborators factory")
        return {"status": "disabled"}

    result = _run_with_engine(run_renewal_sweep, collaborators)
    result["status"] = "ok"
    return result


@celery_app.task(name="billing.reconcile_reservations")
def reconcile_reservations_task() -> dict[str, Any]:
    """Periodic task reconciling stuck charge reservations."""
    collaborators = _load_worker_collaborators()
    if collaborators is None:
        logger.warning("billing.reconciliation.disabled", reason="no collaborators factory")
        return {"status": "disabled"}

    result = _run_with_engine(run_reconciliation, collaborators)
    result["status"] = "ok"
    return result


__all__ = [
    "reconcile_reservations_task",
    "renewal_sweep_task",
    "run_reconciliation",
    "run_renewal_sweep",
]
