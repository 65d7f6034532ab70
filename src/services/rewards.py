"""
Daily engagement rewards.

Two rewards exist: the daily login reward, claimed explicitly, and the
first-chat reward, granted when the user opens their first conversation of
the day. Each is at most one ledger row per user per UTC calendar day. The
row's discriminator ``<reward>:<user>:<YYYY-MM-DD>`` is unique per ledger
kind, so concurrent claims for the same day collapse onto one row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import RewardSettings, settings
from src.core.exceptions import RewardAlreadyClaimedError, StorageError
from src.db.models.credit_transaction import TransactionKind
from src.repositories.ledger_repo import LedgerRepo
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.eligibility import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_KEY_PREFIXES = {
    TransactionKind.DAILY_REWARD: "daily",
    TransactionKind.FIRST_CHAT_REWARD: "first_chat",
}


@dataclass
class RewardClaim:
    user_id: str
    kind: TransactionKind
    credits: int = 0
    balance: int = 0
    transaction_id: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.transaction_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "kind": self.kind.value,
            "credits": self.credits,
            "balance": self.balance,
            "transaction_id": self.transaction_id,
        }


@dataclass
class RewardStatus:
    kind: TransactionKind
    claimed: bool
    can_claim_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "claimed": self.claimed,
            "can_claim_at": self.can_claim_at.isoformat(),
        }


def day_start(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def reward_key(kind: TransactionKind, user_id: str, now: datetime) -> str:
    return f"{_KEY_PREFIXES[kind]}:{user_id}:{day_start(now).date().isoformat()}"


class RewardService:
    """
    Claims and reports daily rewards.

    Usage:
        rewards = RewardService(get_session_factory())
        await rewards.claim_daily_reward(user_id)
        await rewards.get_first_chat_reward_status(user_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        rewards: Optional[RewardSettings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.rewards = rewards or settings.rewards

    async def claim_daily_reward(
        self, user_id: str, now: Optional[datetime] = None
    ) -> RewardClaim:
        """Grant today's login reward; premium subscribers get the larger amount."""

        claim = await self._claim(TransactionKind.DAILY_REWARD, user_id, now or self.clock())
        if not claim.granted:
            raise RewardAlreadyClaimedError("Daily reward", user_id)
        return claim

    async def get_daily_reward_status(
        self, user_id: str, now: Optional[datetime] = None
    ) -> RewardStatus:
        return await self._status(TransactionKind.DAILY_REWARD, user_id, now or self.clock())

    async def claim_first_chat_reward(
        self, user_id: str, now: Optional[datetime] = None
    ) -> RewardClaim:
        """Grant the first-chat reward; a repeat on the same day is not an error."""

        return await self._claim(TransactionKind.FIRST_CHAT_REWARD, user_id, now or self.clock())

    async def get_first_chat_reward_status(
        self, user_id: str, now: Optional[datetime] = None
    ) -> RewardStatus:
        return await self._status(TransactionKind.FIRST_CHAT_REWARD, user_id, now or self.clock())

    async def _claim(self, kind: TransactionKind, user_id: str, now: datetime) -> RewardClaim:
        key = reward_key(kind, user_id, now)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    ledger = LedgerRepo(session)
                    if await ledger.get_by_key(kind, key) is not None:
                        logger.debug(f"[REWARD] {kind.value} already claimed by {user_id} ({key})")
                        return RewardClaim(user_id, kind, balance=await ledger.balance(user_id))

                    amount = await self._amount(session, kind, user_id)
                    entry = await ledger.append(
                        user_id=user_id,
                        amount=amount,
                        kind=kind,
                        created_at=now,
                        idempotency_key=key,
                        note=f"{_KEY_PREFIXES[kind]}_reward",
                    )
                    balance = await ledger.balance(user_id)
        except IntegrityError:
            # Same-day claim committed first.
            logger.debug(f"[REWARD] Lost {kind.value} race for {user_id} ({key})")
            async with self.session_factory() as session:
                balance = await LedgerRepo(session).balance(user_id)
            return RewardClaim(user_id, kind, balance=balance)
        except SQLAlchemyError as exc:
            logger.error(f"[REWARD] {kind.value} failed for {user_id}: {exc}")
            raise StorageError() from exc

        logger.info(f"[REWARD] {kind.value} of {amount} credits to {user_id}")
        return RewardClaim(
            user_id, kind, credits=amount, balance=balance, transaction_id=entry.id
        )

    async def _status(self, kind: TransactionKind, user_id: str, now: datetime) -> RewardStatus:
        async with self.session_factory() as session:
            existing = await LedgerRepo(session).get_by_key(kind, reward_key(kind, user_id, now))
        if existing is None:
            return RewardStatus(kind, claimed=False, can_claim_at=ensure_utc(now))
        return RewardStatus(kind, claimed=True, can_claim_at=day_start(now) + timedelta(days=1))

    async def _amount(self, session: AsyncSession, kind: TransactionKind, user_id: str) -> int:
        if kind == TransactionKind.FIRST_CHAT_REWARD:
            return self.rewards.first_chat_credits
        current = await SubscriptionRepo(session).get_active_for_user(user_id)
        if current is not None and current.plan_id in self.rewards.premium_plan_ids:
            return self.rewards.daily_premium_credits
        return self.rewards.daily_credits
