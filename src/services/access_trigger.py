"""Best-effort free-tier grant on authenticated access."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from src.db.session import get_session_factory
from src.services.grant_engine import CreditGrantEngine, GrantResult

logger = logging.getLogger(__name__)


async def on_authenticated_access(
    user_id: str,
    engine: Optional[CreditGrantEngine] = None,
    now: Optional[datetime] = None,
) -> Optional[GrantResult]:
    """
    Grant the free-tier allowance if the user's period has elapsed.

    Never raises. Paid subscriptions are left to renewal webhooks and the
    reconciliation job, so only an ACTIVE FREE row is considered here.
    """

    try:
        if engine is None:
            engine = CreditGrantEngine(get_session_factory())
        sub = await engine.get_active_subscription(user_id)
        if sub is None or sub.plan is None or not sub.plan.is_free:
            return None
        return await engine.grant_periodic(user_id, sub.id, now=now)
    except Exception:
        logger.exception(f"[ACCESS] Free-tier grant check failed for user {user_id}")
        return None
