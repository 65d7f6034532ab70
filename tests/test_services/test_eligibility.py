from __future__ import annotations

from datetime import timedelta

from src.db.models.subscription import Subscription, SubscriptionStatus
from src.services.eligibility import (
    current_period_index,
    ensure_utc,
    grant_idempotency_key,
    has_unclaimed_renewal,
    is_eligible,
    is_lapsed,
    next_eligible_at,
)
from tests.helpers import day


def make_sub(**overrides) -> Subscription:
    values = dict(
        id="sub-1",
        user_id="user-1",
        plan_id="free",
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=day(0),
        last_granted_at=day(0),
        last_renewal_at=None,
        renewal_pending=False,
    )
    values.update(overrides)
    return Subscription(**values)


def test_null_anchor_is_always_eligible():
    sub = make_sub(last_granted_at=None)

    assert is_eligible(sub, day(0))
    assert next_eligible_at(sub) is None


def test_eligibility_boundary_is_inclusive():
    sub = make_sub()

    assert not is_eligible(sub, day(30) - timedelta(seconds=1))
    assert is_eligible(sub, day(30))
    assert next_eligible_at(sub) == day(30)


def test_naive_storage_values_are_treated_as_utc():
    naive = day(0).replace(tzinfo=None)
    sub = make_sub(last_granted_at=naive)

    assert ensure_utc(naive) == day(0)
    assert is_eligible(sub, day(30))
    assert not is_eligible(sub, day(29))


def test_period_index_counts_windows_without_backfilling():
    sub = make_sub()

    assert current_period_index(sub, day(0)) == 1
    assert current_period_index(sub, day(29)) == 1
    assert current_period_index(sub, day(65)) == 3
    # Two windows elapsed, but eligibility is a yes/no question: one grant.
    assert is_eligible(sub, day(65))


def test_period_index_uses_period_start_before_first_grant():
    sub = make_sub(last_granted_at=None, current_period_start=day(10))

    assert current_period_index(sub, day(45)) == 2


def test_unclaimed_renewal_blocks_lapse():
    sub = make_sub(plan_id="plus", last_renewal_at=day(31), renewal_pending=True)

    assert has_unclaimed_renewal(sub)
    assert not is_lapsed(sub, day(40), grace_days=3)


def test_lapse_respects_grace_window():
    sub = make_sub(plan_id="plus", last_renewal_at=day(0))

    assert not has_unclaimed_renewal(sub)
    assert not is_lapsed(sub, day(32), grace_days=3)
    assert is_lapsed(sub, day(33), grace_days=3)


def test_grant_key_tracks_the_consumed_anchor():
    assert grant_idempotency_key(make_sub(last_granted_at=None)) == "sub-1:first"

    naive = make_sub(last_granted_at=day(0).replace(tzinfo=None))
    aware = make_sub(last_granted_at=day(0))
    assert grant_idempotency_key(naive) == grant_idempotency_key(aware)
    assert grant_idempotency_key(aware) != grant_idempotency_key(make_sub(last_granted_at=day(30)))


def test_renewal_stamped_ahead_of_our_clock_is_consumed_by_its_grant():
    # Provider timestamp a few minutes past the grant anchor.
    sub = make_sub(
        plan_id="plus",
        last_granted_at=day(31),
        last_renewal_at=day(31) + timedelta(minutes=2),
        renewal_pending=False,
    )

    assert not has_unclaimed_renewal(sub)
    assert is_lapsed(sub, day(64), grace_days=3)
