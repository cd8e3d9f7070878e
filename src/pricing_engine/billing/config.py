"""
Billing engine configuration
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DowngradePolicy(str, Enum):
    """When a downgrade takes effect. Downgrades are never prorated."""

    END_OF_CYCLE = "end_of_cycle"
    IMMEDIATE = "immediate"


class NegativeProrationPolicy(str, Enum):
    """What happens to a negative upgrade delta."""

    CREDIT = "credit"
    REFUND = "refund"


class LifecyclePolicy(BaseModel):
    """Policy switches for plan changes and refunds"""

    model_config = ConfigDict(frozen=True)

    downgrade_policy: DowngradePolicy = Field(
        DowngradePolicy.END_OF_CYCLE, description="When downgrades take effect"
    )
    negative_proration_policy: NegativeProrationPolicy = Field(
        NegativeProrationPolicy.CREDIT, description="Handling of negative upgrade deltas"
    )
    cancel_on_full_refund: bool = Field(
        True, description="Cancel immediately when a full refund is issued"
    )


class RenewalConfig(BaseModel):
    """Renewal retry configuration"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1, description="Failed attempts before expiry")
    retry_hours: list[int] = Field(
        default_factory=lambda: [24, 72], description="Hours before each retry"
    )

    def retry_delay_hours(self, attempts: int) -> int:
        """Delay before the retry that follows ``attempts`` failures."""
        if not self.retry_hours:
            return 24
        index = min(max(attempts - 1, 0), len(self.retry_hours) - 1)
        return self.retry_hours[index]


class ConcurrencyConfig(BaseModel):
    """Per-subscription claim configuration"""

    model_config = ConfigDict(frozen=True)

    lock_retry_attempts: int = Field(5, ge=1, description="Claim attempts")
    lock_retry_min_seconds: float = Field(0.05, ge=0, description="Initial backoff")
    lock_retry_max_seconds: float = Field(1.0, ge=0, description="Backoff ceiling")
    lock_lease_seconds: int = Field(300, ge=1, description="Stale claim lease")


class TimeoutConfig(BaseModel):
    """External call timeouts"""

    model_config = ConfigDict(frozen=True)

    payment_seconds: float = Field(30.0, gt=0, description="Charge/refund timeout")
    currency_seconds: float = Field(5.0, gt=0, description="Currency service timeout")
    notification_seconds: float = Field(5.0, gt=0, description="Notification timeout")


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict(frozen=True)

    default_currency: str = Field("USD", min_length=3, max_length=3)
    default_locale: str = Field("en_US")

    policy: LifecyclePolicy = Field(default_factory=LifecyclePolicy)
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    currency_precision: dict[str, int] = Field(
        default_factory=dict, description="Minor-unit precision overrides"
    )
    reservation_stale_minutes: int = Field(15, ge=1)

    @field_validator("default_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("currency_precision")
    @classmethod
    def upper_precision_keys(cls, v: dict[str, int]) -> dict[str, int]:
        return {code.upper(): digits for code, digits in v.items()}

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Create configuration from the centralized settings."""
        from pricing_engine.settings import settings

        billing = settings.billing
        return cls(
            default_currency=billing.default_currency,
            default_locale=billing.default_locale,
            policy=LifecyclePolicy(
                downgrade_policy=DowngradePolicy(billing.downgrade_policy),
                negative_proration_policy=NegativeProrationPolicy(
                    billing.negative_proration_policy
                ),
                cancel_on_full_refund=billing.cancel_on_full_refund,
            ),
            renewal=RenewalConfig(
                max_attempts=billing.renewal_max_attempts,
                retry_hours=billing.renewal_retry_hours,
            ),
            concurrency=ConcurrencyConfig(
                lock_retry_attempts=billing.lock_retry_attempts,
                lock_retry_min_seconds=billing.lock_retry_min_seconds,
                lock_retry_max_seconds=billing.lock_retry_max_seconds,
                lock_lease_seconds=billing.lock_lease_seconds,
            ),
            timeouts=TimeoutConfig(
                payment_seconds=billing.payment_timeout_seconds,
                currency_seconds=billing.currency_timeout_seconds,
                notification_seconds=billing.notification_timeout_seconds,
            ),
            currency_precision=billing.currency_precision,
            reservation_stale_minutes=billing.reservation_stale_minutes,
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
