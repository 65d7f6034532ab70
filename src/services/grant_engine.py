"""
Credit grant engine.

Every public operation runs in a single database transaction spanning the
subscription store and the ledger, so a grant is either fully recorded
(ledger row plus advanced ``last_granted_at``) or not at all.

Idempotency rests on two storage-level guards:

* ``last_granted_at`` is advanced with a compare-and-swap against the value
  read in the same transaction. A concurrent grant that moved it first makes
  the update match zero rows and this attempt becomes a skip.
* Grant rows carry a discriminator that is unique per ledger kind
  (``initial:<user>`` or ``<subscription>:<anchor>``), so even a writer that
  slipped past the first guard cannot append a second row for the same period.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import BillingSettings, settings
from src.core.exceptions import (
    InvalidPlanChangeError,
    PlanConfigurationError,
    StorageError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from src.db.models.credit_transaction import CreditTransaction, TransactionKind
from src.db.models.plan import Plan
from src.db.models.subscription import Subscription, SubscriptionStatus
from src.repositories.ledger_repo import LedgerRepo
from src.repositories.plan_repo import PlanRepo
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.eligibility import grant_idempotency_key, is_eligible, utcnow
from src.services.lifecycle import supersede_active

logger = logging.getLogger(__name__)

ADJUSTMENT_KINDS = (TransactionKind.ADJUSTMENT, TransactionKind.REFUND)


class GrantOutcome(str, enum.Enum):
    GRANTED = "granted"
    SKIPPED = "skipped"
    ALREADY_INITIALIZED = "already_initialized"
    ALREADY_ACTIVE = "already_active"


@dataclass
class GrantResult:
    outcome: GrantOutcome
    user_id: str
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: int = 0
    reason: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.outcome == GrantOutcome.GRANTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "reason": self.reason,
        }


def _require_allowance(plan: Plan, amount: Optional[int]) -> int:
    if amount is None or int(amount) <= 0:
        raise PlanConfigurationError(
            f"Plan '{plan.id}' has no positive credit allowance configured",
            plan_id=plan.id,
        )
    return int(amount)


class CreditGrantEngine:
    """
    Issues credit grants exactly once per subscription period.

    Usage:
        engine = CreditGrantEngine(get_session_factory())
        await engine.grant_initial(user_id)
        await engine.grant_periodic(user_id, subscription_id)
        await engine.activate_plan(user_id, "plus", provider_reference="I-ABC")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        billing: Optional[BillingSettings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.billing = billing or settings.billing

    # =========================================================================
    # GRANTS
    # =========================================================================

    async def grant_initial(self, user_id: str, now: Optional[datetime] = None) -> GrantResult:
        """
        Enrol a new user on the free plan and grant the signup allowance.

        A user who already has any subscription row, current or ended, is
        never granted again.
        """
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    subs = SubscriptionRepo(session)
                    if await subs.count_for_user(user_id):
                        logger.debug(f"[GRANT] {user_id} already initialized")
                        return GrantResult(GrantOutcome.ALREADY_INITIALIZED, user_id)

                    plan = await self._require_plan(session, self.billing.free_plan_id)
                    if not plan.is_free:
                        raise PlanConfigurationError(
                            f"Signup plan '{plan.id}' is not a FREE tier plan",
                            plan_id=plan.id,
                        )
                    amount = _require_allowance(plan, plan.signup_allowance)

                    sub = await subs.create(user_id, plan.id, now, last_granted_at=now)
                    entry = await LedgerRepo(session).append(
                        user_id=user_id,
                        amount=amount,
                        kind=TransactionKind.GRANT_INITIAL,
                        created_at=now,
                        subscription_id=sub.id,
                        idempotency_key=f"initial:{user_id}",
                        note=f"Initial credits for {plan.name} plan",
                    )
        except IntegrityError:
            # A concurrent signup for the same user committed first.
            logger.debug(f"[GRANT] Concurrent initialization for {user_id}, skipping")
            return GrantResult(GrantOutcome.ALREADY_INITIALIZED, user_id)
        except SQLAlchemyError as exc:
            logger.error(f"[GRANT] Initial grant failed for {user_id}: {exc}")
            raise StorageError() from exc

        logger.info(f"[GRANT] Initial grant of {amount} credits to {user_id} ({sub.id})")
        return GrantResult(
            GrantOutcome.GRANTED,
            user_id,
            subscription_id=sub.id,
            transaction_id=entry.id,
            amount=amount,
        )

    async def grant_periodic(
        self,
        user_id: str,
        subscription_id: str,
        now: Optional[datetime] = None,
        source_event_id: Optional[str] = None,
    ) -> GrantResult:
        """
        Grant the next period's allowance if the subscription is eligible.

        Returns a SKIPPED result when the period has not elapsed or another
        trigger granted it first; neither is an error.
        """
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    sub = await SubscriptionRepo(session).get(subscription_id)
                    if sub is None or sub.user_id != user_id:
                        raise SubscriptionNotFoundError(subscription_id=subscription_id)
                    plan = await self._require_plan(session, sub.plan_id)
                    result = await self._grant_periodic_in_session(
                        session, sub, plan, now, source_event_id
                    )
        except IntegrityError:
            logger.debug(f"[GRANT] Lost grant race on {subscription_id} (ledger key)")
            return GrantResult(
                GrantOutcome.SKIPPED, user_id, subscription_id=subscription_id, reason="lost_race"
            )
        except SQLAlchemyError as exc:
            logger.error(f"[GRANT] Periodic grant failed for {subscription_id}: {exc}")
            raise StorageError() from exc
        return result

    async def activate_plan(
        self,
        user_id: str,
        plan_id: str,
        provider_reference: Optional[str] = None,
        now: Optional[datetime] = None,
        source_event_id: Optional[str] = None,
    ) -> GrantResult:
        """
        Move a user onto ``plan_id`` and grant its first allowance.

        The current ACTIVE row is cancelled, the new row is inserted with no
        grant anchor and immediately granted, all in one commit.
        """
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    subs = SubscriptionRepo(session)
                    plan = await self._require_plan(session, plan_id)
                    if not plan.is_active:
                        raise PlanConfigurationError(
                            f"Plan '{plan_id}' is not available for activation", plan_id=plan_id
                        )

                    replay = await self._find_replayed_activation(
                        subs, user_id, plan, provider_reference
                    )
                    if replay is not None:
                        return replay

                    previous = await supersede_active(session, user_id, now)
                    new_sub = await subs.create(
                        user_id, plan.id, now, provider_reference=provider_reference
                    )
                    result = await self._grant_periodic_in_session(
                        session, new_sub, plan, now, source_event_id
                    )
        except IntegrityError as exc:
            logger.warning(f"[GRANT] Concurrent activation for {user_id} rejected")
            raise SubscriptionConflictError(user_id) from exc
        except SQLAlchemyError as exc:
            logger.error(f"[GRANT] Plan activation failed for {user_id}: {exc}")
            raise StorageError() from exc

        logger.info(
            f"[GRANT] Activated {plan.id} for {user_id} "
            f"(sub={new_sub.id}, replaced={previous.id if previous else None}, "
            f"granted={result.amount})"
        )
        return result

    async def change_plan(
        self, user_id: str, plan_id: str, now: Optional[datetime] = None
    ) -> Subscription:
        """
        Switch a paying user to another paid plan.

        Goes through the same supersede-and-insert path as :meth:`activate_plan`,
        but the new row inherits the period anchor, provider reference and any
        pending renewal of the old one: the new allowance is granted at the next
        period boundary, never on the switch itself.
        """
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    subs = SubscriptionRepo(session)
                    current = await subs.get_active_with_plan(user_id)
                    if current is None or current.plan.is_free or not current.provider_reference:
                        raise SubscriptionNotFoundError("No active paid subscription found")

                    target = await PlanRepo(session).get(plan_id)
                    if target is None or not target.is_active or target.is_free:
                        raise InvalidPlanChangeError(
                            f"Plan '{plan_id}' is not available for a plan change", plan_id=plan_id
                        )
                    if target.id == current.plan_id:
                        raise InvalidPlanChangeError(
                            f"Already subscribed to '{plan_id}'", plan_id=plan_id
                        )

                    await supersede_active(session, user_id, now)
                    new_sub = await subs.create(
                        user_id,
                        target.id,
                        now,
                        last_granted_at=current.last_granted_at,
                        provider_reference=current.provider_reference,
                    )
                    if current.last_renewal_at is not None:
                        await subs.record_renewal(
                            new_sub.id, current.last_renewal_at, pending=current.renewal_pending
                        )
                        await session.refresh(new_sub)
        except IntegrityError as exc:
            logger.warning(f"[GRANT] Concurrent plan change for {user_id} rejected")
            raise SubscriptionConflictError(user_id) from exc
        except SQLAlchemyError as exc:
            logger.error(f"[GRANT] Plan change failed for {user_id}: {exc}")
            raise StorageError() from exc

        logger.info(
            f"[GRANT] Changed {user_id} from {current.plan_id} to {target.id} "
            f"(sub={new_sub.id}, replaced={current.id})"
        )
        return new_sub

    async def record_adjustment(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind = TransactionKind.ADJUSTMENT,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        """Append a support adjustment or refund. A repeated ``reference`` returns the first row."""

        if kind not in ADJUSTMENT_KINDS:
            raise ValueError(f"{kind.value} cannot be recorded as an adjustment")
        if int(amount) == 0:
            raise ValueError("Adjustment amount must be non-zero")
        now = now or self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    ledger = LedgerRepo(session)
                    if reference:
                        existing = await ledger.get_by_key(kind, reference)
                        if existing is not None:
                            return existing
                    entry = await ledger.append(
                        user_id=user_id,
                        amount=int(amount),
                        kind=kind,
                        created_at=now,
                        idempotency_key=reference,
                        note=note,
                    )
        except IntegrityError:
            async with self.session_factory() as session:
                existing = await LedgerRepo(session).get_by_key(kind, reference)
            if existing is None:
                raise
            return existing
        except SQLAlchemyError as exc:
            raise StorageError() from exc

        logger.info(f"[LEDGER] {kind.value} of {int(amount):+d} for {user_id} ({reference})")
        return entry

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_balance(self, user_id: str) -> int:
        async with self.session_factory() as session:
            return await LedgerRepo(session).balance(user_id)

    async def has_enough_credits(self, user_id: str, required: int) -> bool:
        return await self.get_balance(user_id) >= int(required)

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[TransactionKind] = None,
    ) -> Tuple[List[CreditTransaction], int]:
        async with self.session_factory() as session:
            ledger = LedgerRepo(session)
            rows = await ledger.list_for_user(user_id, limit=limit, offset=offset, kind=kind)
            total = await ledger.count_for_user(user_id, kind=kind)
        return rows, total

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        async with self.session_factory() as session:
            return await SubscriptionRepo(session).get_active_with_plan(user_id)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _require_plan(self, session: AsyncSession, plan_id: str) -> Plan:
        plan = await PlanRepo(session).get(plan_id)
        if plan is None:
            raise PlanConfigurationError(f"Plan '{plan_id}' is not configured", plan_id=plan_id)
        return plan

    async def _find_replayed_activation(
        self,
        subs: SubscriptionRepo,
        user_id: str,
        plan: Plan,
        provider_reference: Optional[str],
    ) -> Optional[GrantResult]:
        """Detect activations that would not change anything."""

        current = await subs.get_active_for_user(user_id)
        if current is not None and current.plan_id == plan.id:
            if current.provider_reference in (None, provider_reference):
                if provider_reference and current.provider_reference is None:
                    await subs.attach_provider_reference(current.id, provider_reference)
                logger.debug(f"[GRANT] {user_id} already on {plan.id}, activation is a no-op")
                return GrantResult(
                    GrantOutcome.ALREADY_ACTIVE, user_id, subscription_id=current.id
                )

        if provider_reference:
            known = await subs.find_by_provider_reference(provider_reference)
            if known is not None and known.plan_id == plan.id:
                if known.status == SubscriptionStatus.CANCELLED.value:
                    logger.warning(
                        f"[GRANT] Ignoring activation of cancelled reference {provider_reference}"
                    )
                    return GrantResult(
                        GrantOutcome.SKIPPED,
                        user_id,
                        subscription_id=known.id,
                        reason="reference_cancelled",
                    )
                if known.is_active:
                    return GrantResult(
                        GrantOutcome.ALREADY_ACTIVE, known.user_id, subscription_id=known.id
                    )
        return None

    async def _grant_periodic_in_session(
        self,
        session: AsyncSession,
        sub: Subscription,
        plan: Plan,
        now: datetime,
        source_event_id: Optional[str],
    ) -> GrantResult:
        if not sub.is_active:
            logger.debug(f"[GRANT] Subscription {sub.id} is {sub.status}, skipping")
            return GrantResult(
                GrantOutcome.SKIPPED, sub.user_id, subscription_id=sub.id, reason="inactive"
            )

        amount = _require_allowance(plan, plan.periodic_allowance)
        if not is_eligible(sub, now, plan.period_days):
            logger.debug(f"[GRANT] Subscription {sub.id} not eligible yet")
            return GrantResult(
                GrantOutcome.SKIPPED, sub.user_id, subscription_id=sub.id, reason="not_eligible"
            )

        expected_anchor = sub.last_granted_at
        key = grant_idempotency_key(sub)
        advanced = await SubscriptionRepo(session).advance_grant_anchor(
            sub.id, expected_anchor, now
        )
        if not advanced:
            logger.debug(f"[GRANT] Lost grant race on {sub.id} (anchor moved)")
            return GrantResult(
                GrantOutcome.SKIPPED, sub.user_id, subscription_id=sub.id, reason="lost_race"
            )

        entry = await LedgerRepo(session).append(
            user_id=sub.user_id,
            amount=amount,
            kind=TransactionKind.GRANT_PERIODIC,
            created_at=now,
            subscription_id=sub.id,
            idempotency_key=key,
            source_event_id=source_event_id,
            note=f"Periodic credits for {plan.name} plan",
        )
        logger.info(f"[GRANT] Periodic grant of {amount} credits to {sub.user_id} ({sub.id})")
        return GrantResult(
            GrantOutcome.GRANTED,
            sub.user_id,
            subscription_id=sub.id,
            transaction_id=entry.id,
            amount=amount,
        )
