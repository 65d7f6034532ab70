"""Billing plan catalog model."""
from __future__ import annotations

import enum
from typing import Optional

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base


class PlanTier(str, enum.Enum):
    FREE = "FREE"
    PAID = "PAID"


class Plan(Base):
    """Immutable catalog entry describing what one grant period is worth."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    tier: Mapped[str] = mapped_column(String, nullable=False, default=PlanTier.PAID.value)
    periodic_allowance: Mapped[int] = mapped_column(Integer, nullable=False)
    # One-time signup grant; only meaningful for FREE plans.
    initial_allowance: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def is_free(self) -> bool:
        return self.tier == PlanTier.FREE.value

    @property
    def signup_allowance(self) -> int:
        if self.initial_allowance is not None:
            return self.initial_allowance
        return self.periodic_allowance

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Plan {self.id} tier={self.tier} allowance={self.periodic_allowance}>"
