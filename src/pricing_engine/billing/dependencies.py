"""
Billing module dependencies.

Shared FastAPI dependencies for billing endpoints: caller identity, the
external collaborators registered on the application and the engine services.
"""

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Header, HTTPException, Request, status

from pricing_engine.billing.collaborators import (
    CallerIdentity,
    CurrencyConverter,
    NotificationSink,
    PaymentProcessor,
)
from pricing_engine.billing.config import get_billing_config
from pricing_engine.billing.exceptions import BillingConfigurationError, BillingPermissionError
from pricing_engine.billing.reconciliation_service import ReconciliationService
from pricing_engine.billing.subscriptions.service import SubscriptionService
from pricing_engine.db import get_session_factory


def is_truthy(value: str | None) -> bool:
    return (value or "").lower() in {"1", "true", "yes", "on"}


@dataclass
class BillingCollaborators:
    """External services the engine calls, registered on ``app.state``."""

    payment_processor: PaymentProcessor
    currency_converter: CurrencyConverter | None = None
    notification_sink: NotificationSink | None = None
    clock: Callable[[], datetime] | None = None


def load_collaborators(path: str) -> BillingCollaborators:
    """Build collaborators from a ``module:callable`` factory path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise BillingConfigurationError(
            f"Invalid collaborators factory {path!r}, expected module:callable",
            "billing.collaborators_factory",
        )
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise BillingConfigurationError(
            f"Cannot load collaborators factory {path!r}", "billing.collaborators_factory"
        ) from e
    collaborators = factory()
    if not isinstance(collaborators, BillingCollaborators):
        raise BillingConfigurationError(
            f"{path} did not return BillingCollaborators", "billing.collaborators_factory"
        )
    return collaborators


async def get_caller(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_user_admin: str | None = Header(None, alias="X-User-Admin"),
) -> CallerIdentity:
    """
    Identity of the already-authenticated caller.

    Authentication happens upstream; the gateway forwards the user id and the
    admin flag as headers.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return CallerIdentity(user_id=x_user_id, is_admin=is_truthy(x_user_admin))


async def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if not caller.is_admin:
        raise BillingPermissionError("perform administrative billing operations", caller.user_id)
    return caller


def get_collaborators(request: Request) -> BillingCollaborators:
    collaborators = getattr(request.app.state, "billing_collaborators", None)
    if collaborators is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing collaborators are not configured",
        )
    return collaborators


def get_clock(request: Request) -> Callable[[], datetime] | None:
    """Clock override from the registered collaborators, if any."""
    collaborators = getattr(request.app.state, "billing_collaborators", None)
    return collaborators.clock if collaborators is not None else None


def get_subscription_service(
    collaborators: BillingCollaborators = Depends(get_collaborators),
) -> SubscriptionService:
    return SubscriptionService(
        get_session_factory(),
        collaborators.payment_processor,
        currency_converter=collaborators.currency_converter,
        notification_sink=collaborators.notification_sink,
        config=get_billing_config(),
        clock=collaborators.clock,
    )


def get_reconciliation_service(
    collaborators: BillingCollaborators = Depends(get_collaborators),
) -> ReconciliationService:
    return ReconciliationService(
        get_session_factory(),
        collaborators.payment_processor,
        notification_sink=collaborators.notification_sink,
        config=get_billing_config(),
        clock=collaborators.clock,
    )


__all__ = [
    "BillingCollaborators",
    "get_caller",
    "get_clock",
    "get_collaborators",
    "get_reconciliation_service",
    "get_subscription_service",
    "is_truthy",
    "load_collaborators",
    "require_admin",
]
