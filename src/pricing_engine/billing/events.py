"""
Billing event types and event dispatch helpers.

Engine calls never publish from inside a transaction. Each call returns its
pending domain events and ``EventDispatcher`` drains them to the notification
sink after commit.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from pricing_engine.billing.collaborators import NotificationSink

logger = structlog.get_logger(__name__)


# ============================================================================
# Billing Event Types
# ============================================================================


class BillingEvents:
    """Billing event type constants."""

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPGRADED = "subscription.upgraded"
    SUBSCRIPTION_DOWNGRADE_SCHEDULED = "subscription.downgrade_scheduled"
    SUBSCRIPTION_DOWNGRADED = "subscription.downgraded"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_EXTENDED = "subscription.extended"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"

    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Coupon events
    COUPON_REDEEMED = "coupon.redeemed"

    # Operator alerts
    INTEGRITY_ALERT = "billing.integrity_alert"
    PAYMENT_OUTCOME_UNKNOWN = "billing.payment_outcome_unknown"


@dataclass(frozen=True)
class DomainEvent:
    """An event produced by an engine call, published after commit."""

    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        return {
            **self.payload,
            "occurred_at": self.occurred_at.isoformat(),
            "source": "billing",
        }


# ============================================================================
# Event Dispatch
# ============================================================================


class EventDispatcher:
    """Fire-and-forget publisher in front of a notification sink."""

    def __init__(self, sink: NotificationSink | None, timeout_seconds: float = 5.0) -> None:
        self.sink = sink
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, events: Iterable[DomainEvent]) -> int:
        """
        Publish events in order.

        Failures are logged and never raised to the caller.

        Returns:
            Number of events the sink accepted
        """
        if self.sink is None:
            return 0

        delivered = 0
        for event in events:
            try:
                await asyncio.wait_for(
                    self.sink.publish(event.event_type, event.to_payload()),
                    timeout=self.timeout_seconds,
                )
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Failed to publish billing event",
                    event_type=event.event_type,
                    error=str(e),
                )
        return delivered

    async def alert(self, event_type: str, **payload: Any) -> None:
        """Publish an operator alert immediately."""
        await self.dispatch([DomainEvent(event_type, payload)])


__all__ = ["BillingEvents", "DomainEvent", "EventDispatcher"]
