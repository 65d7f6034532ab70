"""Repository utilities for user subscriptions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.db.models.subscription import Subscription, SubscriptionStatus

UNSET = object()


class SubscriptionRepo:
    """Data-access helpers for :class:`Subscription`."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, subscription_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active_for_user(self, user_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return result.scalars().first()

    async def count_for_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
        )
        return int(result.scalar_one() or 0)

    async def find_by_provider_reference(self, provider_reference: str) -> Subscription | None:
        """Return the ACTIVE row for a reference, else the most recent one."""

        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.provider_reference == provider_reference)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        )
        rows = list(result.scalars().all())
        for row in rows:
            if row.is_active:
                return row
        return rows[0] if rows else None

    async def create(
        self,
        user_id: str,
        plan_id: str,
        now: datetime,
        *,
        last_granted_at: Optional[datetime] = None,
        provider_reference: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            last_granted_at=last_granted_at,
            provider_reference=provider_reference,
            created_at=now,
        )
        self.session.add(subscription)
        await self.session.flush()
        await self.session.refresh(subscription)
        return subscription

    async def advance_grant_anchor(
        self,
        subscription_id: str,
        expected: Optional[datetime],
        new_anchor: datetime,
    ) -> bool:
        """
        Compare-and-swap ``last_granted_at`` from ``expected`` to ``new_anchor``.

        Returns False when another writer moved the anchor (or ended the row)
        after ``expected`` was read. A successful swap also consumes any
        pending renewal.
        """

        anchor_matches = (
            Subscription.last_granted_at.is_(None)
            if expected is None
            else Subscription.last_granted_at == expected
        )
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                anchor_matches,
            )
            .values(
                last_granted_at=new_anchor,
                current_period_start=new_anchor,
                renewal_pending=False,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition_status(
        self,
        subscription_id: str,
        target: SubscriptionStatus,
        now: datetime,
        *,
        expected_anchor=UNSET,
        expected_renewal=UNSET,
    ) -> bool:
        """
        Move an ACTIVE row to ``target``; no-op if it is no longer ACTIVE.

        ``expected_anchor`` and ``expected_renewal`` additionally require
        ``last_granted_at`` and ``last_renewal_at`` to still hold the values the
        caller read.
        """

        conditions = [
            Subscription.id == subscription_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        ]
        if expected_anchor is not UNSET:
            conditions.append(
                Subscription.last_granted_at.is_(None)
                if expected_anchor is None
                else Subscription.last_granted_at == expected_anchor
            )
        if expected_renewal is not UNSET:
            conditions.append(
                Subscription.last_renewal_at.is_(None)
                if expected_renewal is None
                else Subscription.last_renewal_at == expected_renewal
            )
        result = await self.session.execute(
            update(Subscription)
            .where(*conditions)
            .values(status=target.value, ended_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_renewal(
        self, subscription_id: str, occurred_at: datetime, *, pending: bool = True
    ) -> bool:
        """
        Store a renewal confirmation; older confirmations never overwrite newer ones.

        ``pending=False`` records a renewal whose grant was already issued.
        """

        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                (Subscription.last_renewal_at.is_(None))
                | (Subscription.last_renewal_at < occurred_at),
            )
            .values(last_renewal_at=occurred_at, renewal_pending=pending)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_active_batch(
        self, after_id: Optional[str], limit: int
    ) -> list[Subscription]:
        """Keyset page of ACTIVE rows ordered by id, for resumable sweeps."""

        query = select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE.value
        )
        if after_id is not None:
            query = query.where(Subscription.id > after_id)
        result = await self.session.execute(query.order_by(Subscription.id).limit(limit))
        return list(result.scalars().all())

    async def get_active_with_plan(self, user_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription)
            .options(selectinload(Subscription.plan))
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return result.scalars().first()

    async def attach_provider_reference(
        self, subscription_id: str, provider_reference: str
    ) -> bool:
        """Fill in a missing provider reference; existing references are never replaced."""

        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.provider_reference.is_(None),
            )
            .values(provider_reference=provider_reference)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
