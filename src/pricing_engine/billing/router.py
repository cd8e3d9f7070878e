"""
Billing API router.

Self-service endpoints act on the caller's own subscriptions; catalog, coupon
and money-returning operations require an administrator.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from pricing_engine.billing.catalog.models import (
    Plan,
    PlanAnalytics,
    PlanCloneRequest,
    PlanComparison,
    PlanCreateRequest,
    PlanPrice,
    PlanReorderRequest,
    PlanStatus,
    PlanUpdateRequest,
    PriceCreateRequest,
)
from pricing_engine.billing.catalog.service import CatalogService
from pricing_engine.billing.collaborators import CallerIdentity
from pricing_engine.billing.coupons.models import Coupon, CouponCreateRequest, CouponUpdateRequest
from pricing_engine.billing.coupons.service import CouponService
from pricing_engine.billing.dependencies import (
    get_caller,
    get_clock,
    get_reconciliation_service,
    get_subscription_service,
    is_truthy,
    require_admin,
)
from pricing_engine.billing.exceptions import BillingError
from pricing_engine.billing.money_models import MoneyField
from pricing_engine.billing.reconciliation_service import ReconciliationService
from pricing_engine.billing.subscriptions.models import (
    CancelRequest,
    CouponValidationRequest,
    CouponValidationResponse,
    ExtendRequest,
    LedgerEntry,
    PauseRequest,
    PlanChangeRequest,
    RefundRequest,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionResponse,
    SubscriptionResult,
    SubscriptionStatus,
)
from pricing_engine.billing.subscriptions.service import SubscriptionService
from pricing_engine.db import get_async_session

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing")

Caller = Annotated[CallerIdentity, Depends(get_caller)]
Admin = Annotated[CallerIdentity, Depends(require_admin)]
Engine = Annotated[SubscriptionService, Depends(get_subscription_service)]
Session = Annotated[AsyncSession, Depends(get_async_session)]
Clock = Annotated[Callable[[], datetime] | None, Depends(get_clock)]


def _response(result: SubscriptionResult) -> SubscriptionResponse:
    return SubscriptionResponse(subscription=result.subscription, ledger_entry=result.ledger_entry)


# ==================== Plan Catalog ====================


@router.get("/plans", response_model=list[Plan])
async def list_active_plans(db: Session, clock: Clock) -> list[Plan]:
    """Active plans with at least one price, in display order."""
    return await CatalogService(db, clock=clock).get_active_plans()


@router.get("/plans/all", response_model=list[Plan])
async def list_plans(
    _: Admin,
    db: Session,
    clock: Clock,
    status_filter: PlanStatus | None = Query(None, alias="status"),
) -> list[Plan]:
    return await CatalogService(db, clock=clock).list_plans(status_filter)


@router.get("/plans/compare", response_model=PlanComparison)
async def compare_plans(
    db: Session,
    clock: Clock,
    plan_ids: Annotated[list[str], Query(min_length=1)],
) -> PlanComparison:
    return await CatalogService(db, clock=clock).compare_plans(plan_ids)


@router.get("/plans/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str, db: Session, clock: Clock) -> Plan:
    return await CatalogService(db, clock=clock).get_plan(plan_id)


@router.post("/plans", response_model=Plan, status_code=status.HTTP_201_CREATED)
async def create_plan(request: PlanCreateRequest, admin: Admin, db: Session, clock: Clock) -> Plan:
    """Create a draft plan. Requires: admin"""
    plan = await CatalogService(db, clock=clock).create_plan(request)
    await db.commit()
    logger.info("plan.created_via_api", plan_id=plan.plan_id, user_id=admin.user_id)
    return plan


@router.patch("/plans/{plan_id}", response_model=Plan)
async def update_plan(
    plan_id: str, request: PlanUpdateRequest, _: Admin, db: Session, clock: Clock
) -> Plan:
    plan = await CatalogService(db, clock=clock).update_plan(plan_id, request)
    await db.commit()
    return plan


@router.post(
    "/plans/{plan_id}/prices", response_model=PlanPrice, status_code=status.HTTP_201_CREATED
)
async def add_price(
    plan_id: str, request: PriceCreateRequest, _: Admin, db: Session, clock: Clock
) -> PlanPrice:
    price = await CatalogService(db, clock=clock).add_price(plan_id, request)
    await db.commit()
    return price


@router.put("/plans/{plan_id}/prices", response_model=PlanPrice)
async def change_price(
    plan_id: str, request: PriceCreateRequest, _: Admin, db: Session, clock: Clock
) -> PlanPrice:
    """
    Change a price.

    Prices already in use by subscriptions get a new version; existing
    subscriptions keep their agreed price.
    """
    price = await CatalogService(db, clock=clock).change_price(plan_id, request)
    await db.commit()
    return price


@router.post("/plans/{plan_id}/activate", response_model=Plan)
async def activate_plan(plan_id: str, _: Admin, db: Session, clock: Clock) -> Plan:
    plan = await CatalogService(db, clock=clock).activate_plan(plan_id)
    await db.commit()
    return plan


@router.post("/plans/{plan_id}/deprecate", response_model=Plan)
async def deprecate_plan(plan_id: str, _: Admin, db: Session, clock: Clock) -> Plan:
    plan = await CatalogService(db, clock=clock).deprecate_plan(plan_id)
    await db.commit()
    return plan


@router.post("/plans/reorder", response_model=list[Plan])
async def reorder_plans(
    request: PlanReorderRequest, _: Admin, db: Session, clock: Clock
) -> list[Plan]:
    """Set display order; returns every plan in the new order. Requires: admin"""
    plans = await CatalogService(db, clock=clock).reorder_plans(request.plan_ids)
    await db.commit()
    return plans


@router.post("/plans/{plan_id}/clone", response_model=Plan, status_code=status.HTTP_201_CREATED)
async def clone_plan(
    plan_id: str, request: PlanCloneRequest, admin: Admin, db: Session, clock: Clock
) -> Plan:
    """Copy a plan into a new draft. Requires: admin"""
    plan = await CatalogService(db, clock=clock).clone_plan(plan_id, request.slug)
    await db.commit()
    logger.info(
        "plan.cloned_via_api",
        source_plan_id=plan_id,
        plan_id=plan.plan_id,
        user_id=admin.user_id,
    )
    return plan


@router.get("/plans/{plan_id}/analytics", response_model=PlanAnalytics)
async def get_plan_analytics(plan_id: str, _: Admin, db: Session, clock: Clock) -> PlanAnalytics:
    return await CatalogService(db, clock=clock).get_plan_analytics(plan_id)


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(plan_id: str, admin: Admin, db: Session, clock: Clock) -> None:
    """Delete a plan no subscription has used. Requires: admin"""
    await CatalogService(db, clock=clock).delete_plan(plan_id)
    await db.commit()
    logger.info("plan.deleted_via_api", plan_id=plan_id, user_id=admin.user_id)


# ==================== Coupons ====================


@router.post("/coupons", response_model=Coupon, status_code=status.HTTP_201_CREATED)
async def create_coupon(request: CouponCreateRequest, _: Admin, db: Session, clock: Clock) -> Coupon:
    coupon = await CouponService(db, clock=clock).create_coupon(request)
    await db.commit()
    return coupon


@router.get("/coupons", response_model=list[Coupon])
async def list_coupons(
    _: Admin, db: Session, clock: Clock, active_only: bool = Query(False)
) -> list[Coupon]:
    return await CouponService(db, clock=clock).list_coupons(active_only)


@router.patch("/coupons/{code}", response_model=Coupon)
async def update_coupon(
    code: str, request: CouponUpdateRequest, _: Admin, db: Session, clock: Clock
) -> Coupon:
    coupon = await CouponService(db, clock=clock).update_coupon(code, request)
    await db.commit()
    return coupon


@router.post("/coupons/{code}/activate", response_model=Coupon)
async def activate_coupon(code: str, _: Admin, db: Session, clock: Clock) -> Coupon:
    coupon = await CouponService(db, clock=clock).activate_coupon(code)
    await db.commit()
    return coupon


@router.post("/coupons/{code}/deactivate", response_model=Coupon)
async def deactivate_coupon(code: str, _: Admin, db: Session, clock: Clock) -> Coupon:
    coupon = await CouponService(db, clock=clock).deactivate_coupon(code)
    await db.commit()
    return coupon


@router.post("/coupons/validate", response_model=CouponValidationResponse)
async def validate_coupon(
    request: CouponValidationRequest, caller: Caller, engine: Engine
) -> CouponValidationResponse:
    """Preview a coupon's discount without redeeming it."""
    validation = await engine.validate_coupon(
        request.code,
        caller.user_id,
        request.plan_id,
        request.billing_period,
        currency=request.currency,
    )
    return CouponValidationResponse(
        code=validation.coupon.code,
        price=MoneyField.from_money(validation.price),
        discount=MoneyField.from_money(validation.discount),
        final_price=MoneyField.from_money(validation.final_price),
    )


# ==================== Subscriptions ====================


@router.post(
    "/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED
)
async def create_subscription(
    request: SubscriptionCreateRequest, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    result = await engine.create_subscription(
        user_id=request.user_id or caller.user_id,
        plan_id=request.plan_id,
        billing_period=request.billing_period,
        coupon_code=request.coupon_code,
        currency=request.currency,
        caller=caller,
        metadata=request.metadata,
    )
    return _response(result)


@router.get("/subscriptions", response_model=list[Subscription])
async def list_subscriptions(
    caller: Caller,
    engine: Engine,
    user_id: str | None = Query(None, description="Admin only: another user's subscriptions"),
    status_filter: SubscriptionStatus | None = Query(None, alias="status"),
) -> list[Subscription]:
    target = user_id if user_id and caller.is_admin else caller.user_id
    return await engine.list_for_user(target, status_filter)


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
async def get_subscription(subscription_id: str, caller: Caller, engine: Engine) -> Subscription:
    return await engine.get_subscription(subscription_id, caller)


@router.get("/subscriptions/{subscription_id}/ledger", response_model=list[LedgerEntry])
async def get_ledger(subscription_id: str, caller: Caller, engine: Engine) -> list[LedgerEntry]:
    return await engine.get_ledger(subscription_id, caller)


@router.get("/subscriptions/{subscription_id}/features/{feature_key}")
async def check_feature(
    subscription_id: str, feature_key: str, caller: Caller, engine: Engine
) -> dict[str, Any]:
    await engine.get_subscription(subscription_id, caller)
    enabled = await engine.has_feature(subscription_id, feature_key)
    return {"feature_key": feature_key, "enabled": enabled}


@router.get("/subscriptions/{subscription_id}/limits/{resource}")
async def check_limit(
    subscription_id: str, resource: str, caller: Caller, engine: Engine
) -> dict[str, Any]:
    await engine.get_subscription(subscription_id, caller)
    limit = await engine.get_limit(subscription_id, resource)
    return {"resource": resource, "limit": limit, "unlimited": limit is None}


@router.post("/subscriptions/{subscription_id}/upgrade", response_model=SubscriptionResponse)
async def upgrade_subscription(
    subscription_id: str, request: PlanChangeRequest, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    result = await engine.upgrade(
        subscription_id, request.plan_id, prorate=request.prorate, caller=caller
    )
    return _response(result)


@router.post("/subscriptions/{subscription_id}/downgrade", response_model=SubscriptionResponse)
async def downgrade_subscription(
    subscription_id: str, request: PlanChangeRequest, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    return _response(await engine.downgrade(subscription_id, request.plan_id, caller=caller))


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: str, request: PauseRequest, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    return _response(await engine.pause(subscription_id, request.resume_at, caller=caller))


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    subscription_id: str, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    return _response(await engine.resume(subscription_id, caller=caller))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str, request: CancelRequest, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    result = await engine.cancel(
        subscription_id, reason=request.reason, immediate=request.immediate, caller=caller
    )
    return _response(result)


@router.post("/subscriptions/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: str, caller: Caller, engine: Engine
) -> SubscriptionResponse:
    """Retry a due or past-due renewal now."""
    return _response(await engine.renew(subscription_id, caller=caller))


@router.post("/subscriptions/{subscription_id}/extend", response_model=SubscriptionResponse)
async def extend_subscription(
    subscription_id: str, request: ExtendRequest, admin: Admin, engine: Engine
) -> SubscriptionResponse:
    """Requires: admin"""
    result = await engine.extend(subscription_id, request.days, reason=request.reason, caller=admin)
    return _response(result)


@router.post("/subscriptions/{subscription_id}/refund", response_model=SubscriptionResponse)
async def refund_subscription(
    subscription_id: str, request: RefundRequest, admin: Admin, engine: Engine
) -> SubscriptionResponse:
    """Requires: admin"""
    amount = None
    if request.amount_minor is not None:
        current = await engine.get_subscription(subscription_id, admin)
        amount = engine.money.money_from_minor_units(request.amount_minor, current.currency)
    result = await engine.refund(
        subscription_id,
        refund_type=request.refund_type,
        amount=amount,
        reason=request.reason,
        cancel=request.cancel,
        caller=admin,
    )
    return SubscriptionResponse(
        subscription=result.subscription,
        ledger_entry=result.ledger_entry,
        refunded=MoneyField.from_money(result.refunded) if result.refunded else None,
    )


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge_subscription(subscription_id: str, admin: Admin, engine: Engine) -> None:
    """Hard-delete a subscription and its ledger. Requires: admin"""
    await engine.purge(subscription_id, admin)


# ==================== Reconciliation ====================


@router.post("/reconciliation/run")
async def run_reconciliation(
    _: Admin,
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
    older_than_minutes: int | None = Query(None, ge=0),
) -> dict[str, Any]:
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    return await service.reconcile(older_than)


# ==================== Error handling ====================


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render billing errors; internal identifiers only reach administrators."""
    is_admin = is_truthy(request.headers.get("X-User-Admin"))
    if exc.status_code >= 500:
        logger.error(
            "billing.request_failed",
            path=request.url.path,
            error_code=exc.error_code,
            context=exc.context,
        )
    body = exc.to_dict() if is_admin else exc.public_dict()
    return JSONResponse(status_code=exc.status_code, content={"error": body})


def register_billing_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)


__all__ = ["billing_error_handler", "register_billing_exception_handlers", "router"]
