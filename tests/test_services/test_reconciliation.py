from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from src.core.config import BillingSettings
from src.db.models.credit_transaction import CreditTransaction, TransactionKind
from src.db.models.subscription import SubscriptionStatus
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.access_trigger import on_authenticated_access
from src.services.eligibility import ensure_utc
from src.services.grant_engine import CreditGrantEngine
from src.services.lifecycle import SubscriptionLifecycleManager
from src.services.reconciliation import ReconciliationJob
from src.services.webhook_dispatcher import WebhookEvent, WebhookEventDispatcher
from tests.helpers import day


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class Ticks:
    """Monotonic clock that replays ``values`` and then stays on the last one."""

    def __init__(self, *values: float) -> None:
        self.values = list(values)

    def __call__(self) -> float:
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def make_job(session_factory, **billing_overrides) -> ReconciliationJob:
    billing = BillingSettings(
        reconciliation_concurrency=1,
        reconciliation_batch_size=2,
        **billing_overrides,
    )
    return ReconciliationJob(session_factory, billing=billing)


async def fetch(session_factory, subscription_id):
    async with session_factory() as session:
        return await SubscriptionRepo(session).get(subscription_id)


async def periodic_grants(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.kind == TransactionKind.GRANT_PERIODIC.value,
            )
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_paid_row_within_period_is_left_alone(session_factory, grant_engine):
    await grant_engine.activate_plan("dave", "plus", now=day(0))

    report = await make_job(session_factory).run(now=day(20))

    assert report.examined == 1
    assert report.skipped == 1
    assert report.granted == report.expired == 0
    assert await grant_engine.get_balance("dave") == 2000


@pytest.mark.asyncio
async def test_missing_first_grant_is_issued(session_factory, grant_engine):
    async with session_factory() as session:
        async with session.begin():
            sub = await SubscriptionRepo(session).create("erin", "plus", day(0))

    report = await make_job(session_factory).run(now=day(1))

    assert report.granted == 1
    assert await grant_engine.get_balance("erin") == 2000
    assert (await fetch(session_factory, sub.id)).last_granted_at is not None


@pytest.mark.asyncio
async def test_confirmed_renewal_without_grant_is_granted(session_factory, grant_engine):
    result = await grant_engine.activate_plan("dave", "plus", now=day(0))
    # Webhook stored the confirmation but its grant never committed.
    async with session_factory() as session:
        async with session.begin():
            await SubscriptionRepo(session).record_renewal(result.subscription_id, day(30))

    job = make_job(session_factory)
    first = await job.run(now=day(31))
    second = await job.run(now=day(31))

    assert first.granted == 1
    assert second.granted == 0
    assert await grant_engine.get_balance("dave") == 4000


@pytest.mark.asyncio
async def test_lapsed_paid_row_expires_after_grace(session_factory, grant_engine):
    result = await grant_engine.activate_plan("dave", "plus", now=day(0))
    job = make_job(session_factory, grace_days=3)

    within_grace = await job.run(now=day(32))
    assert within_grace.expired == 0

    lapsed = await job.run(now=day(33))
    assert lapsed.expired == 1
    sub = await fetch(session_factory, result.subscription_id)
    assert sub.status == SubscriptionStatus.EXPIRED.value
    assert await grant_engine.get_balance("dave") == 2000


@pytest.mark.asyncio
async def test_free_tier_is_not_granted_by_default(session_factory, grant_engine):
    await grant_engine.grant_initial("alice", now=day(0))

    default = await make_job(session_factory).run(now=day(40))
    assert default.granted == 0
    assert await grant_engine.get_balance("alice") == 200

    opted_in = await make_job(session_factory, reconcile_free_tier=True).run(now=day(40))
    assert opted_in.granted == 1
    assert await grant_engine.get_balance("alice") == 400


@pytest.mark.asyncio
async def test_sweep_pages_through_batches_and_isolates_failures(session_factory, grant_engine):
    for user in ("u1", "u2", "u3"):
        await grant_engine.activate_plan(user, "plus", now=day(0))
    async with session_factory() as session:
        async with session.begin():
            await SubscriptionRepo(session).create("u4", "retired-plan", day(0))

    report = await make_job(session_factory).run(now=day(40))

    assert report.batches == 2
    assert report.examined == 4
    assert report.expired == 3
    assert report.failed == 1
    assert len(report.failures) == 1


@pytest.mark.asyncio
async def test_time_budget_stops_new_batches(session_factory, grant_engine):
    for user in ("u1", "u2", "u3"):
        await grant_engine.activate_plan(user, "plus", now=day(0))

    job = ReconciliationJob(
        session_factory,
        billing=BillingSettings(
            reconciliation_batch_size=2,
            reconciliation_concurrency=1,
            reconciliation_time_budget_seconds=10,
        ),
        # start, first batch, two rows, second batch
        monotonic=Ticks(0.0, 0.0, 0.0, 0.0, 1000.0),
    )

    report = await job.run(now=day(40))

    assert report.timed_out is True
    assert report.batches == 1
    assert report.examined == 2
    assert report.deferred == 0


@pytest.mark.asyncio
async def test_time_budget_is_checked_before_each_row(session_factory, grant_engine):
    for user in ("u1", "u2", "u3"):
        await grant_engine.activate_plan(user, "plus", now=day(0))

    job = ReconciliationJob(
        session_factory,
        billing=BillingSettings(
            reconciliation_batch_size=3,
            reconciliation_concurrency=1,
            reconciliation_time_budget_seconds=10,
        ),
        # start, first batch, first row, then the budget is gone
        monotonic=Ticks(0.0, 0.0, 0.0, 1000.0),
    )

    report = await job.run(now=day(40))

    assert report.timed_out is True
    assert report.batches == 1
    assert report.examined == 1
    assert report.expired == 1
    assert report.deferred == 2

    rerun = await make_job(session_factory).run(now=day(40))
    assert rerun.expired == 2


@pytest.mark.asyncio
async def test_report_bounds_share_the_injected_time_base(session_factory, grant_engine):
    await grant_engine.activate_plan("dave", "plus", now=day(0))
    job = ReconciliationJob(
        session_factory,
        billing=BillingSettings(reconciliation_concurrency=1),
        monotonic=Ticks(5.0, 5.0, 5.0, 7.5),
    )

    report = await job.run(now=day(20))

    assert report.started_at == day(20)
    assert report.elapsed_seconds == 2.5
    assert report.finished_at == day(20) + timedelta(seconds=2.5)
    assert report.to_dict()["finished_at"] == (day(20) + timedelta(seconds=2.5)).isoformat()


@pytest.mark.asyncio
async def test_renewal_stamped_ahead_of_server_clock_is_not_granted_twice(session_factory, grant_engine):
    clock = Clock(day(101))
    dispatcher = WebhookEventDispatcher(
        session_factory, grant_engine, SubscriptionLifecycleManager(session_factory), clock=clock
    )
    payload = {"provider_reference": "I-PLUS-9", "user_id": "dave", "plan_id": "plus"}
    activation = await dispatcher.dispatch(
        WebhookEvent(type="ACTIVATION", occurred_at=day(101), **payload)
    )

    clock.now = day(131)
    renewal = await dispatcher.dispatch(
        WebhookEvent(type="RENEWAL", occurred_at=day(131) + timedelta(minutes=2), **payload)
    )
    assert renewal.grant.granted

    job = make_job(session_factory, grace_days=3)
    # No renewal arrives for the period starting at day 161.
    quiet = await job.run(now=day(162))
    assert quiet.granted == 0
    assert quiet.expired == 0
    assert len(await periodic_grants(session_factory, "dave")) == 2

    lapsed = await job.run(now=day(164))
    assert lapsed.expired == 1
    sub = await fetch(session_factory, activation.subscription_id)
    assert sub.status == SubscriptionStatus.EXPIRED.value
    assert await grant_engine.get_balance("dave") == 4000


@pytest.mark.asyncio
async def test_sweep_does_not_expire_a_row_renewed_after_the_batch_read(
    session_factory, grant_engine, monkeypatch
):
    result = await grant_engine.activate_plan("dave", "plus", provider_reference="I-7", now=day(0))
    job = make_job(session_factory, grace_days=3)
    original_reconcile = job._reconcile_one

    async def renewal_lands_first(sub, plan, now, report):
        # Webhook stores the confirmation between the batch read and the expiry.
        async with session_factory() as session:
            async with session.begin():
                await SubscriptionRepo(session).record_renewal(sub.id, day(34))
        await original_reconcile(sub, plan, now, report)

    monkeypatch.setattr(job, "_reconcile_one", renewal_lands_first)

    report = await job.run(now=day(34))

    assert report.expired == 0
    assert report.skipped == 1
    sub = await fetch(session_factory, result.subscription_id)
    assert sub.status == SubscriptionStatus.ACTIVE.value
    assert sub.renewal_pending is True

    follow_up = await make_job(session_factory).run(now=day(34))
    assert follow_up.granted == 1
    assert await grant_engine.get_balance("dave") == 4000


@pytest.mark.asyncio
async def test_concurrent_triggers_grant_a_due_period_once(session_factory, grant_engine):
    initial = await grant_engine.grant_initial("alice", now=day(0))
    job = ReconciliationJob(
        session_factory,
        engine=grant_engine,
        billing=BillingSettings(reconcile_free_tier=True, reconciliation_concurrency=1),
    )

    access, direct, report = await asyncio.gather(
        on_authenticated_access("alice", grant_engine, now=day(35)),
        grant_engine.grant_periodic("alice", initial.subscription_id, now=day(35)),
        job.run(now=day(35)),
    )

    assert [access.granted, direct.granted, report.granted == 1].count(True) == 1
    assert len(await periodic_grants(session_factory, "alice")) == 1
    assert await grant_engine.get_balance("alice") == 400
    sub = await fetch(session_factory, initial.subscription_id)
    assert ensure_utc(sub.last_granted_at) == day(35)


@pytest.mark.asyncio
async def test_reconciliation_uses_injected_engine(session_factory):
    engine = CreditGrantEngine(session_factory)
    await engine.activate_plan("dave", "premium", now=day(0))
    job = ReconciliationJob(
        session_factory, engine=engine, billing=BillingSettings(reconciliation_concurrency=1)
    )

    report = await job.run(now=day(5))

    assert job.engine is engine
    assert report.skipped == 1
