"""Endpoints exposing the caller's credit ledger."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.api.deps import get_grant_engine, get_reward_service, track_access
from src.db.models.credit_transaction import TransactionKind
from src.schemas.billing import (
    BalanceRead,
    CheckBalanceBody,
    CheckBalanceRead,
    RewardClaimRead,
    RewardStatusRead,
    TransactionPage,
    TransactionRead,
)
from src.services.grant_engine import CreditGrantEngine
from src.services.rewards import RewardService
from src.services.limits import check_rate_limit


router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=BalanceRead)
async def get_balance(
    auth=Depends(track_access),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    balance = await engine.get_balance(user_id)
    return BalanceRead(user_id=user_id, balance=balance)


@router.get("/transactions", response_model=TransactionPage)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    kind: Optional[TransactionKind] = None,
    auth=Depends(track_access),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    rows, total = await engine.list_transactions(user_id, limit=limit, offset=offset, kind=kind)
    return TransactionPage(
        items=[TransactionRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/check-balance", response_model=CheckBalanceRead)
async def check_balance(
    body: CheckBalanceBody,
    auth=Depends(track_access),
    engine: CreditGrantEngine = Depends(get_grant_engine),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    balance = await engine.get_balance(user_id)
    return CheckBalanceRead(
        user_id=user_id,
        balance=balance,
        required=body.required,
        has_enough=balance >= body.required,
    )


@router.post("/daily-reward", response_model=RewardClaimRead)
async def claim_daily_reward(
    auth=Depends(track_access),
    rewards: RewardService = Depends(get_reward_service),
):
    """Claim today's login reward. A second claim on the same UTC day is a 409."""

    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    claim = await rewards.claim_daily_reward(user_id)
    return RewardClaimRead(**claim.to_dict())


@router.get("/daily-reward/status", response_model=RewardStatusRead)
async def daily_reward_status(
    auth=Depends(track_access),
    rewards: RewardService = Depends(get_reward_service),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    status = await rewards.get_daily_reward_status(user_id)
    return RewardStatusRead(**status.to_dict())


@router.post("/first-chat-reward", response_model=RewardClaimRead)
async def claim_first_chat_reward(
    auth=Depends(track_access),
    rewards: RewardService = Depends(get_reward_service),
):
    """Called when the user opens a conversation; only the first one each day pays out."""

    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    claim = await rewards.claim_first_chat_reward(user_id)
    return RewardClaimRead(**claim.to_dict())


@router.get("/first-chat-reward/status", response_model=RewardStatusRead)
async def first_chat_reward_status(
    auth=Depends(track_access),
    rewards: RewardService = Depends(get_reward_service),
):
    user_id = auth["user_id"]
    await check_rate_limit(user_id)

    status = await rewards.get_first_chat_reward_status(user_id)
    return RewardStatusRead(**status.to_dict())
