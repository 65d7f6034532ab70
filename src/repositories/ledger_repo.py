"""Repository helpers for the append-only credit ledger."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models.credit_transaction import CreditTransaction, TransactionKind


class LedgerRepo:
    """Appends and aggregates :class:`CreditTransaction` rows. Never updates them."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        *,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        created_at: datetime,
        subscription_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        source_event_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=int(amount),
            kind=kind.value,
            idempotency_key=idempotency_key,
            source_event_id=source_event_id,
            note=note,
            created_at=created_at,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_key(
        self, kind: TransactionKind, idempotency_key: str
    ) -> CreditTransaction | None:
        result = await self.session.execute(
            select(CreditTransaction).where(
                CreditTransaction.kind == kind.value,
                CreditTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    async def balance(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.user_id == user_id
            )
        )
        return int(result.scalar_one() or 0)

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[TransactionKind] = None,
    ) -> list[CreditTransaction]:
        query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        if kind is not None:
            query = query.where(CreditTransaction.kind == kind.value)
        result = await self.session.execute(
            query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_for_user(
        self, user_id: str, kind: Optional[TransactionKind] = None
    ) -> int:
        query = select(func.count()).select_from(CreditTransaction).where(
            CreditTransaction.user_id == user_id
        )
        if kind is not None:
            query = query.where(CreditTransaction.kind == kind.value)
        result = await self.session.execute(query)
        return int(result.scalar_one() or 0)
