"""
Daily reconciliation sweep.

Backup path for grants and expiries the live triggers missed: a renewal
webhook that never arrived, a paid row whose first grant failed, a lapsed
paid row that nobody told us was cancelled. Every action goes through the
same compare-and-swap guarded operations as live traffic, so the job can run
alongside webhooks and logins and can be re-run after a crash.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import BillingSettings, settings
from src.db.models.plan import Plan
from src.db.models.subscription import Subscription
from src.db.session import get_session_factory
from src.repositories.plan_repo import PlanRepo
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.eligibility import has_unclaimed_renewal, is_eligible, is_lapsed, utcnow
from src.services.grant_engine import CreditGrantEngine
from src.services.lifecycle import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    examined: int = 0
    granted: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    batches: int = 0
    elapsed_seconds: float = 0.0
    timed_out: bool = False
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": self.examined,
            "granted": self.granted,
            "expired": self.expired,
            "skipped": self.skipped,
            "failed": self.failed,
            "deferred": self.deferred,
            "batches": self.batches,
            "elapsed_seconds": self.elapsed_seconds,
            "timed_out": self.timed_out,
            "failures": list(self.failures),
        }


class ReconciliationJob:
    """Sweeps ACTIVE subscriptions in keyset-ordered batches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[CreditGrantEngine] = None,
        lifecycle: Optional[SubscriptionLifecycleManager] = None,
        billing: Optional[BillingSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.billing = billing or settings.billing
        self.engine = engine or CreditGrantEngine(session_factory, clock=clock, billing=self.billing)
        self.lifecycle = lifecycle or SubscriptionLifecycleManager(session_factory, clock=clock)
        self.clock = clock
        self.monotonic = monotonic

    async def run(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or self.clock()
        report = ReconciliationReport(started_at=now)
        started = self.monotonic()
        deadline = started + self.billing.reconciliation_time_budget_seconds
        semaphore = asyncio.Semaphore(self.billing.reconciliation_concurrency)

        logger.info(f"[RECONCILE] Starting sweep at {now.isoformat()}")
        plans = await self._load_plans()
        after_id: Optional[str] = None

        while True:
            if report.timed_out or self.monotonic() >= deadline:
                report.timed_out = True
                logger.warning(
                    f"[RECONCILE] Time budget exhausted after {report.examined} subscriptions, "
                    f"remaining rows will be handled by the next run"
                )
                break

            async with self.session_factory() as session:
                batch = await SubscriptionRepo(session).list_active_batch(
                    after_id, self.billing.reconciliation_batch_size
                )
            if not batch:
                break

            report.batches += 1
            await asyncio.gather(
                *(
                    self._guarded(semaphore, deadline, sub, plans.get(sub.plan_id), now, report)
                    for sub in batch
                )
            )
            after_id = batch[-1].id
            if len(batch) < self.billing.reconciliation_batch_size:
                break

        report.elapsed_seconds = self.monotonic() - started
        report.finished_at = now + timedelta(seconds=report.elapsed_seconds)
        logger.info(
            f"[RECONCILE] Done: examined={report.examined} granted={report.granted} "
            f"expired={report.expired} skipped={report.skipped} failed={report.failed} "
            f"deferred={report.deferred} timed_out={report.timed_out}"
        )
        return report

    async def _load_plans(self) -> Dict[str, Plan]:
        async with self.session_factory() as session:
            return {plan.id: plan for plan in await PlanRepo(session).list_all()}

    async def _guarded(
        self,
        semaphore: asyncio.Semaphore,
        deadline: float,
        sub: Subscription,
        plan: Optional[Plan],
        now: datetime,
        report: ReconciliationReport,
    ) -> None:
        async with semaphore:
            if report.timed_out or self.monotonic() >= deadline:
                # Left for the next run.
                report.timed_out = True
                report.deferred += 1
                return
            report.examined += 1
            try:
                await self._reconcile_one(sub, plan, now, report)
            except Exception:
                # One bad row must not stop the sweep.
                report.failed += 1
                report.failures.append(sub.id)
                logger.exception(f"[RECONCILE] Failed to reconcile subscription {sub.id}")

    async def _reconcile_one(
        self,
        sub: Subscription,
        plan: Optional[Plan],
        now: datetime,
        report: ReconciliationReport,
    ) -> None:
        if plan is None:
            raise LookupError(f"Plan '{sub.plan_id}' for subscription {sub.id} is not configured")

        if plan.is_free:
            if self.billing.reconcile_free_tier and is_eligible(sub, now, plan.period_days):
                await self._grant(sub, now, report)
            else:
                report.skipped += 1
            return

        first_grant_missing = sub.last_granted_at is None
        renewal_pending = has_unclaimed_renewal(sub) and is_eligible(sub, now, plan.period_days)
        if first_grant_missing or renewal_pending:
            await self._grant(sub, now, report)
        elif is_lapsed(sub, now, plan.period_days, self.billing.grace_days):
            if await self.lifecycle.expire(
                sub.id, sub.last_granted_at, now, expected_renewal=sub.last_renewal_at
            ):
                report.expired += 1
            else:
                report.skipped += 1
        else:
            report.skipped += 1

    async def _grant(self, sub: Subscription, now: datetime, report: ReconciliationReport) -> None:
        result = await self.engine.grant_periodic(sub.user_id, sub.id, now=now)
        if result.granted:
            report.granted += 1
        else:
            report.skipped += 1


async def run_reconciliation(now: Optional[datetime] = None) -> ReconciliationReport:
    """Entry point for the scheduler and the admin endpoint."""

    return await ReconciliationJob(get_session_factory()).run(now)
