"""
Grant eligibility rules.

Pure functions only: no I/O, no clock reads. Everything takes ``now``
explicitly so callers and tests decide what time it is.

The period anchor is ``last_granted_at`` or, before the first grant,
``current_period_start``. A null ``last_granted_at`` always means the first
grant is due now. Elapsed periods are never accumulated: a subscription
that has been idle for three periods still receives a single allowance.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from src.db.models.subscription import Subscription

DEFAULT_PERIOD_DAYS = 30


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_anchor(sub: Subscription) -> datetime:
    return ensure_utc(sub.last_granted_at or sub.current_period_start)


def is_eligible(
    sub: Subscription, now: datetime, period_days: int = DEFAULT_PERIOD_DAYS
) -> bool:
    if sub.last_granted_at is None:
        return True
    return ensure_utc(now) - ensure_utc(sub.last_granted_at) >= timedelta(days=period_days)


def current_period_index(
    sub: Subscription, now: datetime, period_days: int = DEFAULT_PERIOD_DAYS
) -> int:
    """1-based index of the window ``now`` falls in, counted from the anchor."""

    days_since = (ensure_utc(now) - period_anchor(sub)).days
    return max(days_since, 0) // period_days + 1


def next_eligible_at(
    sub: Subscription, period_days: int = DEFAULT_PERIOD_DAYS
) -> Optional[datetime]:
    """When the next grant becomes due; None means it is due already."""

    if sub.last_granted_at is None:
        return None
    return ensure_utc(sub.last_granted_at) + timedelta(days=period_days)


def has_unclaimed_renewal(sub: Subscription) -> bool:
    """
    A confirmed renewal is still waiting for its grant.

    Set when a newer renewal is stored and cleared by the compare-and-swap of
    the grant that consumes it. ``last_renewal_at`` carries the provider's
    clock and is never compared with ``last_granted_at``.
    """

    return bool(sub.renewal_pending)


def is_lapsed(
    sub: Subscription,
    now: datetime,
    period_days: int = DEFAULT_PERIOD_DAYS,
    grace_days: int = 0,
) -> bool:
    """The period ended more than ``grace_days`` ago with no renewal to show for it."""

    if has_unclaimed_renewal(sub):
        return False
    deadline = period_anchor(sub) + timedelta(days=period_days + grace_days)
    return ensure_utc(now) >= deadline


def grant_idempotency_key(sub: Subscription) -> str:
    """
    Ledger discriminator for the periodic grant that consumes the current anchor.

    Two writers that read the same ``last_granted_at`` build the same key, so
    the ledger's unique constraint rejects the second one even if the
    compare-and-swap were bypassed.
    """

    if sub.last_granted_at is None:
        return f"{sub.id}:first"
    return f"{sub.id}:{ensure_utc(sub.last_granted_at).isoformat()}"
