"""Append-only credit ledger model."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base


class TransactionKind(str, enum.Enum):
    GRANT_INITIAL = "GRANT_INITIAL"
    GRANT_PERIODIC = "GRANT_PERIODIC"
    DEDUCTION = "DEDUCTION"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"
    DAILY_REWARD = "DAILY_REWARD"
    FIRST_CHAT_REWARD = "FIRST_CHAT_REWARD"


class CreditTransaction(Base):
    """Immutable ledger entry. A user's balance is the sum of ``amount``."""

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), index=True, nullable=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source_event_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("kind", "idempotency_key", name="uq_credit_transactions_kind_key"),
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CreditTransaction {self.id} user={self.user_id} {self.kind} {self.amount:+d}>"
