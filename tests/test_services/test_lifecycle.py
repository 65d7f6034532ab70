from __future__ import annotations

import pytest

from src.core.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from src.db.models.subscription import Subscription, SubscriptionStatus
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.lifecycle import check_transition
from tests.helpers import day


async def fetch(session_factory, subscription_id) -> Subscription:
    async with session_factory() as session:
        return await SubscriptionRepo(session).get(subscription_id)


def test_terminal_states_cannot_move():
    for status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
        sub = Subscription(id="s", user_id="u", plan_id="plus", status=status.value)
        for target in SubscriptionStatus:
            with pytest.raises(InvalidTransitionError):
                check_transition(sub, target)


def test_active_can_end_either_way():
    sub = Subscription(id="s", user_id="u", plan_id="plus", status=SubscriptionStatus.ACTIVE.value)

    check_transition(sub, SubscriptionStatus.CANCELLED)
    check_transition(sub, SubscriptionStatus.EXPIRED)
    with pytest.raises(InvalidTransitionError):
        check_transition(sub, SubscriptionStatus.ACTIVE)


@pytest.mark.asyncio
async def test_cancel_is_idempotent(grant_engine, lifecycle, session_factory):
    initial = await grant_engine.grant_initial("alice", now=day(0))

    assert await lifecycle.cancel(initial.subscription_id, now=day(5)) is True
    assert await lifecycle.cancel(initial.subscription_id, now=day(6)) is False

    sub = await fetch(session_factory, initial.subscription_id)
    assert sub.status == SubscriptionStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_cancelling_an_expired_row_is_rejected(grant_engine, lifecycle):
    result = await grant_engine.activate_plan("bob", "plus", now=day(0))
    assert await lifecycle.expire(result.subscription_id, day(0), now=day(40))

    with pytest.raises(InvalidTransitionError):
        await lifecycle.cancel(result.subscription_id, now=day(41))


@pytest.mark.asyncio
async def test_expire_loses_to_a_fresh_grant(grant_engine, lifecycle, session_factory):
    result = await grant_engine.activate_plan("bob", "plus", now=day(0))
    # Renewal grant lands after the sweep read the row.
    await grant_engine.grant_periodic("bob", result.subscription_id, now=day(31))

    assert await lifecycle.expire(result.subscription_id, day(0), now=day(34)) is False

    sub = await fetch(session_factory, result.subscription_id)
    assert sub.status == SubscriptionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_expire_on_already_ended_row_is_a_noop(grant_engine, lifecycle):
    result = await grant_engine.activate_plan("bob", "plus", now=day(0))
    await lifecycle.cancel(result.subscription_id, now=day(2))

    assert await lifecycle.expire(result.subscription_id, day(0), now=day(40)) is False


@pytest.mark.asyncio
async def test_cancel_by_reference(grant_engine, lifecycle):
    await grant_engine.activate_plan("bob", "plus", provider_reference="I-1", now=day(0))

    cancelled = await lifecycle.cancel_by_reference("I-1", now=day(3))
    assert cancelled.status == SubscriptionStatus.CANCELLED.value

    repeat = await lifecycle.cancel_by_reference("I-1", now=day(4))
    assert repeat.id == cancelled.id
    assert await lifecycle.cancel_by_reference("I-unknown", now=day(4)) is None


@pytest.mark.asyncio
async def test_cancel_for_user_requires_active_row(grant_engine, lifecycle):
    with pytest.raises(SubscriptionNotFoundError):
        await lifecycle.cancel_for_user("ghost")

    await grant_engine.grant_initial("alice", now=day(0))
    cancelled = await lifecycle.cancel_for_user("alice", now=day(1))
    assert cancelled.status == SubscriptionStatus.CANCELLED.value

    with pytest.raises(SubscriptionNotFoundError):
        await lifecycle.cancel_for_user("alice", now=day(2))


@pytest.mark.asyncio
async def test_unknown_subscription_id(lifecycle):
    with pytest.raises(SubscriptionNotFoundError):
        await lifecycle.cancel("missing")


@pytest.mark.asyncio
async def test_expire_loses_to_a_renewal_confirmed_after_the_read(grant_engine, lifecycle, session_factory):
    result = await grant_engine.activate_plan("bob", "plus", now=day(0))
    async with session_factory() as session:
        async with session.begin():
            await SubscriptionRepo(session).record_renewal(result.subscription_id, day(33))

    assert (
        await lifecycle.expire(result.subscription_id, day(0), now=day(34), expected_renewal=None)
        is False
    )
    assert (
        await lifecycle.expire(
            result.subscription_id, day(0), now=day(34), expected_renewal=day(33)
        )
        is True
    )
