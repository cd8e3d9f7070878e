"""
Coupon engine: validation, atomic redemption and administration.
"""

from pricing_engine.billing.coupons.models import (
    Coupon,
    CouponCreateRequest,
    CouponRedemption,
    CouponUpdateRequest,
    CouponValidation,
    DiscountType,
)
from pricing_engine.billing.coupons.service import CouponService

__all__ = [
    "Coupon",
    "CouponCreateRequest",
    "CouponRedemption",
    "CouponService",
    "CouponUpdateRequest",
    "CouponValidation",
    "DiscountType",
]
