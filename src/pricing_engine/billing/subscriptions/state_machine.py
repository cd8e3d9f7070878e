"""
Subscription state machine.

Source statuses from which each operation may run. Guards that depend on time
or money are checked by the service; any combination missing here is an
invalid transition.
"""

from pricing_engine.billing.exceptions import InvalidTransitionError
from pricing_engine.billing.subscriptions.models import Operation, SubscriptionStatus

S = SubscriptionStatus

ALLOWED_FROM: dict[Operation, frozenset[SubscriptionStatus]] = {
    Operation.UPGRADE: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Operation.DOWNGRADE: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Operation.PAUSE: frozenset({S.ACTIVE, S.PAST_DUE}),
    Operation.RESUME: frozenset({S.PAUSED}),
    Operation.CANCEL: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Operation.RENEW: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Operation.EXTEND: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.PAUSED}),
    Operation.REFUND: frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.PAUSED}),
}

# Statuses in which a scheduled downgrade may be pending
PENDING_PLAN_STATUSES = frozenset({S.ACTIVE, S.PAST_DUE})


def initial_status(trial_days: int) -> SubscriptionStatus:
    return S.TRIALING if trial_days > 0 else S.ACTIVE


def can_transition(status: SubscriptionStatus, operation: Operation) -> bool:
    return status in ALLOWED_FROM.get(operation, frozenset())


def ensure_transition(
    status: SubscriptionStatus, operation: Operation, reason: str | None = None
) -> None:
    """Raise InvalidTransitionError unless ``operation`` may run from ``status``."""
    if not can_transition(status, operation):
        raise InvalidTransitionError(status.value, operation.value, reason)


def status_after_failed_renewal(
    status: SubscriptionStatus, attempts: int, max_attempts: int
) -> SubscriptionStatus:
    """
    Where a declined renewal leaves a subscription.

    Only a subscription already past due can expire; a first decline from
    ``trialing`` or ``active`` always moves it to ``past_due``.
    """
    if status == S.PAST_DUE and attempts >= max_attempts:
        return S.EXPIRED
    return S.PAST_DUE


def allowed_operations(status: SubscriptionStatus) -> list[Operation]:
    """Operations available from a status, in declaration order."""
    return [op for op, sources in ALLOWED_FROM.items() if status in sources]


__all__ = [
    "ALLOWED_FROM",
    "PENDING_PLAN_STATUSES",
    "allowed_operations",
    "can_transition",
    "ensure_transition",
    "initial_status",
    "status_after_failed_renewal",
]
