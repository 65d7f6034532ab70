"""Pydantic schemas for credit and subscription resources"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.db.models.credit_transaction import TransactionKind


class PlanRead(BaseModel):
    """Catalog entry as exposed to clients."""

    id: str = Field(..., description="Plan identifier")
    name: str = Field(..., description="Display name")
    tier: str = Field(..., description="FREE or PAID")
    periodic_allowance: int = Field(..., description="Credits granted per period")
    period_days: int = Field(..., description="Length of one grant period in days")

    model_config = ConfigDict(from_attributes=True)


class SubscriptionRead(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: str
    current_period_start: datetime
    last_granted_at: Optional[datetime] = None
    last_renewal_at: Optional[datetime] = None
    provider_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CurrentSubscription(BaseModel):
    """Active subscription plus grant diagnostics."""

    subscribed: bool
    subscription: Optional[SubscriptionRead] = None
    plan: Optional[PlanRead] = None
    eligible_now: bool = False
    next_eligible_at: Optional[datetime] = None
    period_index: Optional[int] = None


class TransactionRead(BaseModel):
    id: str
    amount: int
    kind: str
    subscription_id: Optional[str] = None
    source_event_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionPage(BaseModel):
    items: List[TransactionRead]
    total: int
    limit: int
    offset: int


class BalanceRead(BaseModel):
    user_id: str
    balance: int


class CheckBalanceBody(BaseModel):
    """Payload for the balance pre-check."""

    required: int = Field(..., ge=0, description="Credits the caller is about to spend")


class CheckBalanceRead(BaseModel):
    user_id: str
    balance: int
    required: int
    has_enough: bool


class ActivatePlanBody(BaseModel):
    """Support-side plan activation."""

    user_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    provider_reference: Optional[str] = None


class AdjustmentBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Signed credit delta, never zero")
    kind: TransactionKind = TransactionKind.ADJUSTMENT
    reference: Optional[str] = Field(
        default=None, description="Caller reference; a repeated reference returns the first entry"
    )
    note: Optional[str] = None


class ChangePlanBody(BaseModel):
    plan_id: str = Field(..., min_length=1, description="Paid plan to switch to")


class RewardClaimRead(BaseModel):
    granted: bool
    kind: TransactionKind
    credits: int = Field(..., description="Credits added by this claim")
    balance: int
    transaction_id: Optional[str] = None


class RewardStatusRead(BaseModel):
    """Whether today's reward was claimed and when the next claim opens."""

    kind: TransactionKind
    claimed: bool
    can_claim_at: datetime
