"""Database models package exports."""

from src.db.models.credit_transaction import CreditTransaction, TransactionKind
from src.db.models.plan import Plan, PlanTier
from src.db.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "CreditTransaction",
    "Plan",
    "PlanTier",
    "Subscription",
    "SubscriptionStatus",
    "TransactionKind",
]
