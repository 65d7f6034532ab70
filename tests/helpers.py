"""Shared test helpers."""
from datetime import datetime, timedelta, timezone
from typing import Dict

import jwt

from src.core.config import settings
from src.db.models.plan import Plan, PlanTier

API_PREFIX = f"{settings.API_PREFIX}/v1"
SIGNUP = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def day(n: float) -> datetime:
    """Point in time ``n`` days after the reference signup."""

    return SIGNUP + timedelta(days=n)


def seed_plans() -> list[Plan]:
    return [
        Plan(
            id="free",
            name="Free",
            tier=PlanTier.FREE.value,
            periodic_allowance=200,
            initial_allowance=200,
            period_days=30,
            is_active=True,
        ),
        Plan(id="plus", name="Plus", tier=PlanTier.PAID.value, periodic_allowance=2000, period_days=30),
        Plan(
            id="premium", name="Premium", tier=PlanTier.PAID.value, periodic_allowance=5000, period_days=30
        ),
    ]


def build_auth_header(user_id: str) -> Dict[str, str]:
    token = jwt.encode({"user_id": user_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    return {"Authorization": f"Bearer {token}"}
