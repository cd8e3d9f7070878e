"""
Billing engine exceptions.

Every error carries a stable machine-readable code, an HTTP status code, a
human-readable message, structured context and a recovery hint.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for administrative API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }

    def public_dict(self) -> dict[str, Any]:
        """Error payload for non-administrative callers, without internal identifiers."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "recovery_hint": self.recovery_hint,
        }


# ============================================================================
# Validation errors
# ============================================================================


class ValidationError(BillingError):
    """Bad input combination, reported to the caller and never retried."""

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=422, context=context, recovery_hint=recovery_hint
        )


class CurrencyMismatchError(ValidationError):
    """Two money values in different currencies were combined."""

    def __init__(self, left: str, right: str) -> None:
        super().__init__(
            f"Currency mismatch: {left} != {right}",
            "CURRENCY_MISMATCH",
            context={"left_currency": left, "right_currency": right},
            recovery_hint="Convert amounts to a common currency before combining them",
        )


class InvalidAmountError(ValidationError):
    """Invalid monetary amount or quantity."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(
            message,
            "INVALID_AMOUNT",
            context=context,
            recovery_hint="Provide a positive amount within the refundable balance",
        )


class PlanNotActiveError(ValidationError):
    """Plan exists but cannot be subscribed to."""

    def __init__(self, plan_id: str, status: str) -> None:
        super().__init__(
            f"Plan {plan_id} is not active (status: {status})",
            "PLAN_NOT_ACTIVE",
            context={"plan_id": plan_id, "plan_status": status},
            recovery_hint="Choose an active plan",
        )


class PeriodNotSupportedError(ValidationError):
    """Plan does not offer the requested billing period."""

    def __init__(self, plan_id: str, billing_period: str) -> None:
        super().__init__(
            f"Plan {plan_id} does not support {billing_period} billing",
            "PERIOD_NOT_SUPPORTED",
            context={"plan_id": plan_id, "billing_period": billing_period},
            recovery_hint="Choose one of the billing periods the plan offers",
        )


class NoPriceForCombinationError(ValidationError):
    """No price exists for the (plan, currency, period) combination."""

    def __init__(self, plan_id: str, currency: str, billing_period: str) -> None:
        super().__init__(
            f"Plan {plan_id} has no {billing_period} price in {currency}",
            "NO_PRICE_FOR_COMBINATION",
            context={"plan_id": plan_id, "currency": currency, "billing_period": billing_period},
            recovery_hint="Pick another currency or billing period",
        )


class PlanConfigurationError(ValidationError):
    """Administrative plan change violates a catalog rule."""

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        super().__init__(
            message,
            "PLAN_CONFIGURATION_ERROR",
            context={"plan_id": plan_id} if plan_id else {},
            recovery_hint="Create a new price version or plan instead of mutating a published one",
        )


class SamePlanError(ValidationError):
    """Plan change targets the plan already in use."""

    def __init__(self, subscription_id: str, plan_id: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} is already on plan {plan_id}",
            "SAME_PLAN",
            context={"subscription_id": subscription_id, "plan_id": plan_id},
            recovery_hint="Choose a different plan",
        )


# ============================================================================
# Coupon errors
# ============================================================================


class CouponInvalidError(ValidationError):
    """Coupon cannot be used for this request."""

    def __init__(
        self,
        message: str,
        code: str,
        error_code: str = "COUPON_INVALID",
        recovery_hint: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message,
            error_code,
            context={"coupon_code": code, **context},
            recovery_hint=recovery_hint or "Remove the coupon or try another code",
        )
        self.code = code


class CouponNotFoundError(CouponInvalidError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} not found", code, "COUPON_NOT_FOUND")
        self.status_code = 404


class CouponExpiredError(CouponInvalidError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} has expired", code, "COUPON_EXPIRED")


class CouponNotYetValidError(CouponInvalidError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} is not valid yet", code, "COUPON_NOT_YET_VALID")


class CouponExhaustedError(CouponInvalidError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} has reached its usage limit", code, "COUPON_EXHAUSTED")


class CouponUserLimitReachedError(CouponInvalidError):
    def __init__(self, code: str, user_id: str) -> None:
        super().__init__(
            f"Coupon {code} was already used the maximum number of times by this user",
            code,
            "COUPON_USER_LIMIT_REACHED",
            user_id=user_id,
        )


class CouponNotApplicableError(CouponInvalidError):
    def __init__(self, code: str, plan_id: str, billing_period: str) -> None:
        super().__init__(
            f"Coupon {code} does not apply to this plan",
            code,
            "COUPON_NOT_APPLICABLE",
            plan_id=plan_id,
            billing_period=billing_period,
        )


# ============================================================================
# Not found errors
# ============================================================================


class PlanNotFoundError(BillingError):
    """Pricing plan not found error."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(
            f"Plan {plan_id} not found",
            "PLAN_NOT_FOUND",
            status_code=404,
            context={"plan_id": plan_id},
            recovery_hint="Verify the plan ID and ensure it exists",
        )


class SubscriptionNotFoundError(BillingError):
    """Subscription not found error."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} not found",
            "SUBSCRIPTION_NOT_FOUND",
            status_code=404,
            context={"subscription_id": subscription_id},
            recovery_hint="Verify the subscription ID and ensure it exists",
        )


# ============================================================================
# State errors
# ============================================================================


class InvalidTransitionError(BillingError):
    """Operation is not allowed from the subscription's current status."""

    def __init__(self, current_state: str, operation: str, reason: str | None = None) -> None:
        message = f"Cannot {operation} a subscription that is {current_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            "INVALID_TRANSITION",
            status_code=409,
            context={"current_state": current_state, "operation": operation},
            recovery_hint="Check the subscription status before retrying",
        )
        self.current_state = current_state
        self.operation = operation


class BillingPermissionError(BillingError):
    """Caller is not allowed to perform the operation."""

    def __init__(self, operation: str, user_id: str | None = None) -> None:
        context: dict[str, Any] = {"operation": operation}
        if user_id:
            context["user_id"] = user_id
        super().__init__(
            f"Not allowed to {operation}",
            "PERMISSION_DENIED",
            status_code=403,
            context=context,
            recovery_hint="Ask an administrator to perform this operation",
        )


class ConcurrentModificationError(BillingError):
    """Subscription kept changing underneath the operation."""

    def __init__(self, subscription_id: str, attempts: int | None = None) -> None:
        context: dict[str, Any] = {"subscription_id": subscription_id}
        if attempts is not None:
            context["attempts"] = attempts
        super().__init__(
            f"Subscription {subscription_id} is being modified by another request",
            "CONCURRENT_MODIFICATION",
            status_code=409,
            context=context,
            recovery_hint="Reload the subscription and retry",
        )


# ============================================================================
# External errors
# ============================================================================


class PaymentError(BillingError):
    """Payment processing errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "PAYMENT_ERROR",
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, error_code, status_code=402, context=context, recovery_hint=recovery_hint
        )


class PaymentFailedError(PaymentError):
    """Charge was declined; subscription state is unchanged."""

    def __init__(self, message: str, subscription_id: str | None = None, **context: Any) -> None:
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            "PAYMENT_FAILED",
            context=context,
            recovery_hint="Update the payment method and retry",
        )


class PaymentProcessorError(PaymentError):
    """Processor rejected or failed a refund or status call."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(
            message,
            "PAYMENT_PROCESSOR_ERROR",
            context=context,
            recovery_hint="Retry later or contact support",
        )
        self.status_code = 502


class PaymentOutcomeUnknownError(PaymentError):
    """Charge call timed out; the outcome must be reconciled."""

    def __init__(self, subscription_id: str, reservation_id: str) -> None:
        super().__init__(
            "Payment outcome is unknown; the subscription was left unchanged",
            "PAYMENT_OUTCOME_UNKNOWN",
            context={"subscription_id": subscription_id, "reservation_id": reservation_id},
            recovery_hint="Do not retry; the charge will be reconciled",
        )
        self.status_code = 504


class CurrencyServiceError(BillingError):
    """Currency collaborator unavailable or failed."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(
            message,
            "CURRENCY_SERVICE_ERROR",
            status_code=503,
            context=context,
            recovery_hint="Retry later",
        )


# ============================================================================
# Integrity errors
# ============================================================================


class BillingIntegrityError(BillingError):
    """A charge succeeded but its state change could not be recorded."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(
            message,
            "BILLING_INTEGRITY_ERROR",
            status_code=500,
            context=context,
            recovery_hint="An operator has been alerted; the charge will be reconciled",
        )


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(self, message: str, config_key: str | None = None) -> None:
        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context={"config_key": config_key} if config_key else {},
            recovery_hint="Check billing configuration settings",
        )
