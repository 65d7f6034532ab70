"""
Subscription lifecycle state machine.

ACTIVE is the only state a row can leave. CANCELLED and EXPIRED are terminal
for that row; coming back always means a new row. Every transition is a
conditional UPDATE on ``status = 'ACTIVE'`` so two writers racing to end the
same row cannot both succeed, and the loser sees a plain ``False``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import InvalidTransitionError, StorageError, SubscriptionNotFoundError
from src.db.models.subscription import Subscription, SubscriptionStatus
from src.repositories.subscription_repo import UNSET, SubscriptionRepo
from src.services.eligibility import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}


def check_transition(sub: Subscription, target: SubscriptionStatus) -> None:
    current = SubscriptionStatus(sub.status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(sub.id, current.value, target.value)


async def supersede_active(
    session: AsyncSession, user_id: str, now: datetime
) -> Optional[Subscription]:
    """
    Cancel the user's ACTIVE row inside the caller's transaction.

    Used by plan activation so the old row ends in the same commit that
    creates its replacement.
    """

    repo = SubscriptionRepo(session)
    current = await repo.get_active_for_user(user_id)
    if current is None:
        return None
    check_transition(current, SubscriptionStatus.CANCELLED)
    if await repo.transition_status(current.id, SubscriptionStatus.CANCELLED, now):
        await session.refresh(current)
        logger.info(
            f"[LIFECYCLE] Superseded subscription {current.id} "
            f"(plan={current.plan_id}) for user {user_id}"
        )
        return current
    return None


class SubscriptionLifecycleManager:
    """Applies status transitions, each in its own transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def cancel(self, subscription_id: str, now: Optional[datetime] = None) -> bool:
        return await self._transition(
            subscription_id, SubscriptionStatus.CANCELLED, now or self.clock()
        )

    async def cancel_by_reference(
        self, provider_reference: str, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """Cancel the row matching a provider reference. None if nothing matched."""

        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repo = SubscriptionRepo(session)
                    sub = await repo.find_by_provider_reference(provider_reference)
                    if sub is None:
                        logger.warning(
                            f"[LIFECYCLE] No subscription for provider reference {provider_reference}"
                        )
                        return None
                    if not sub.is_active:
                        logger.debug(
                            f"[LIFECYCLE] Subscription {sub.id} already {sub.status}, nothing to cancel"
                        )
                        return sub
                    await repo.transition_status(sub.id, SubscriptionStatus.CANCELLED, now)
                    await session.refresh(sub)
        except SQLAlchemyError as exc:
            raise StorageError() from exc
        logger.info(f"[LIFECYCLE] Cancelled subscription {sub.id} ({provider_reference})")
        return sub

    async def cancel_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Subscription:
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    sub = await supersede_active(session, user_id, now)
        except SQLAlchemyError as exc:
            raise StorageError() from exc
        if sub is None:
            raise SubscriptionNotFoundError("No active subscription found")
        return sub

    async def expire(
        self,
        subscription_id: str,
        expected_anchor: Optional[datetime],
        now: Optional[datetime] = None,
        *,
        expected_renewal=UNSET,
    ) -> bool:
        """
        Mark a lapsed row EXPIRED.

        Conditioned on ``last_granted_at`` still equal to ``expected_anchor``
        and, when given, ``last_renewal_at`` still equal to ``expected_renewal``:
        if a renewal grant landed or a renewal was confirmed after the caller
        looked, the row stays ACTIVE.
        """

        return await self._transition(
            subscription_id,
            SubscriptionStatus.EXPIRED,
            now or self.clock(),
            expected_anchor=expected_anchor,
            expected_renewal=expected_renewal,
            match_anchor=True,
        )

    async def _transition(
        self,
        subscription_id: str,
        target: SubscriptionStatus,
        now: datetime,
        *,
        expected_anchor: Optional[datetime] = None,
        expected_renewal=UNSET,
        match_anchor: bool = False,
    ) -> bool:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repo = SubscriptionRepo(session)
                    sub = await repo.get(subscription_id)
                    if sub is None:
                        raise SubscriptionNotFoundError(subscription_id=subscription_id)
                    if sub.status == target.value or (match_anchor and not sub.is_active):
                        # Already ended by someone else; repeating is a no-op.
                        changed = False
                    elif match_anchor:
                        changed = await repo.transition_status(
                            sub.id,
                            target,
                            now,
                            expected_anchor=expected_anchor,
                            expected_renewal=expected_renewal,
                        )
                    else:
                        check_transition(sub, target)
                        changed = await repo.transition_status(sub.id, target, now)
        except SQLAlchemyError as exc:
            raise StorageError() from exc

        if changed:
            logger.info(f"[LIFECYCLE] Subscription {subscription_id} -> {target.value}")
        else:
            logger.debug(
                f"[LIFECYCLE] Subscription {subscription_id} changed concurrently, "
                f"{target.value} not applied"
            )
        return changed
