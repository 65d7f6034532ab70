"""Repository layer package."""

from src.repositories.ledger_repo import LedgerRepo
from src.repositories.plan_repo import PlanRepo
from src.repositories.subscription_repo import SubscriptionRepo

__all__ = [
    "LedgerRepo",
    "PlanRepo",
    "SubscriptionRepo",
]
