"""Endpoints for the caller's subscription."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_db_session, get_grant_engine, get_lifecycle_manager, track_access
from src.auth.jwt import require_auth
from src.repositories.plan_repo import PlanRepo
from src.schemas.billing import ChangePlanBody, CurrentSubscription, PlanRead, SubscriptionRead
from src.services.eligibility import current_period_index, is_eligible, next_eligible_at, utcnow
from src.services.grant_engine import CreditGrantEngine
from src.services.lifecycle import SubscriptionLifecycleManager
from src.services.limits import check_rate_limit


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/plans", response_model=list[PlanRead])
async def list_plans(db: AsyncSession = Depends(get_db_session)):
    plans = await PlanRepo(db).list_active()
    return [PlanRead.model_validate(plan) for plan in plans]


@router.post("/bootstrap")
async def bootstrap(
    auth=Depends(require_auth),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    """Signup hook: enrol the caller on the free plan with its initial credits."""

    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    result = await engine.grant_initial(user_id)
    balance = await engine.get_balance(user_id)
    return {**result.to_dict(), "balance": balance}


@router.get("/current", response_model=CurrentSubscription)
async def current_subscription(
    auth=Depends(track_access),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    subscription = await engine.get_active_subscription(user_id)
    if subscription is None:
        return CurrentSubscription(subscribed=False)

    plan = subscription.plan
    now = utcnow()
    return CurrentSubscription(
        subscribed=True,
        subscription=SubscriptionRead.model_validate(subscription),
        plan=PlanRead.model_validate(plan),
        eligible_now=is_eligible(subscription, now, plan.period_days),
        next_eligible_at=next_eligible_at(subscription, plan.period_days),
        period_index=current_period_index(subscription, now, plan.period_days),
    )


@router.post("/cancel", response_model=SubscriptionRead)
async def cancel_subscription(
    auth=Depends(require_auth),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    subscription = await lifecycle.cancel_for_user(user_id)
    return SubscriptionRead.model_validate(subscription)


@router.post("/change-plan", response_model=SubscriptionRead)
async def change_plan(
    body: ChangePlanBody,
    auth=Depends(require_auth),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    """Switch paid plans; the new allowance starts at the next period boundary."""

    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    subscription = await engine.change_plan(user_id, body.plan_id)
    return SubscriptionRead.model_validate(subscription)
