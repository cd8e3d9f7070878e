"""
Plan catalog: plans, versioned prices, features and limits.
"""

from pricing_engine.billing.catalog.models import (
    BillingPeriod,
    FeatureType,
    Plan,
    PlanAnalytics,
    PlanCloneRequest,
    PlanComparison,
    PlanCreateRequest,
    PlanFeature,
    PlanPrice,
    PlanReorderRequest,
    PlanStatus,
    PlanUpdateRequest,
    PriceCreateRequest,
)
from pricing_engine.billing.catalog.service import CatalogService

__all__ = [
    "BillingPeriod",
    "CatalogService",
    "FeatureType",
    "Plan",
    "PlanAnalytics",
    "PlanCloneRequest",
    "PlanComparison",
    "PlanCreateRequest",
    "PlanFeature",
    "PlanPrice",
    "PlanReorderRequest",
    "PlanStatus",
    "PlanUpdateRequest",
    "PriceCreateRequest",
]
