"""
Payment webhook dispatcher.

Events reaching this module are already authenticated and parsed by the
payment collaborator. Provider-specific event names are folded into three
canonical kinds here so nothing downstream branches on provider vocabulary.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import StorageError, WebhookError
from src.db.models.subscription import SubscriptionStatus
from src.repositories.subscription_repo import SubscriptionRepo
from src.services.eligibility import ensure_utc, utcnow
from src.services.grant_engine import CreditGrantEngine, GrantResult
from src.services.lifecycle import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


class WebhookEventType(str, enum.Enum):
    ACTIVATION = "ACTIVATION"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"


_ALIASES: Dict[str, WebhookEventType] = {
    "ACTIVATION": WebhookEventType.ACTIVATION,
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookEventType.ACTIVATION,
    "BILLING.SUBSCRIPTION.CREATED": WebhookEventType.ACTIVATION,
    "SUBSCRIPTION.ACTIVATED": WebhookEventType.ACTIVATION,
    "RENEWAL": WebhookEventType.RENEWAL,
    "PAYMENT.SALE.COMPLETED": WebhookEventType.RENEWAL,
    "BILLING.SUBSCRIPTION.RENEWED": WebhookEventType.RENEWAL,
    "INVOICE.PAID": WebhookEventType.RENEWAL,
    "CANCELLATION": WebhookEventType.CANCELLATION,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookEventType.CANCELLATION,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookEventType.CANCELLATION,
    "CUSTOMER.SUBSCRIPTION.DELETED": WebhookEventType.CANCELLATION,
}


def classify(raw_type: str) -> Optional[WebhookEventType]:
    """Map a provider event name onto a canonical kind. None means ignore it."""

    if not raw_type:
        return None
    return _ALIASES.get(raw_type.strip().upper().replace("-", "_"))


class WebhookEvent(BaseModel):
    type: str
    provider_reference: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    occurred_at: datetime
    event_id: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def kind(self) -> Optional[WebhookEventType]:
        return classify(self.type)


@dataclass
class DispatchResult:
    status: str
    kind: Optional[WebhookEventType] = None
    grant: Optional[GrantResult] = None
    subscription_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "kind": self.kind.value if self.kind else None,
            "subscription_id": self.subscription_id,
            "grant": self.grant.to_dict() if self.grant else None,
            "details": self.details,
        }


class WebhookEventDispatcher:
    """Routes canonical webhook events to the lifecycle manager and grant engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: CreditGrantEngine,
        lifecycle: SubscriptionLifecycleManager,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.lifecycle = lifecycle
        self.clock = clock

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        kind = event.kind
        if kind is None:
            logger.info(f"[WEBHOOK] Ignoring unhandled event type {event.type} ({event.event_id})")
            return DispatchResult(status="ignored", details={"type": event.type})

        logger.info(
            f"[WEBHOOK] {kind.value} for {event.provider_reference} "
            f"(event={event.event_id}, occurred_at={event.occurred_at.isoformat()})"
        )
        if kind == WebhookEventType.ACTIVATION:
            return await self._handle_activation(event)
        if kind == WebhookEventType.RENEWAL:
            return await self._handle_renewal(event)
        return await self._handle_cancellation(event)

    async def _handle_activation(self, event: WebhookEvent) -> DispatchResult:
        self._require_fields(event, WebhookEventType.ACTIVATION)
        grant = await self.engine.activate_plan(
            event.user_id,
            event.plan_id,
            provider_reference=event.provider_reference,
            now=self.clock(),
            source_event_id=event.event_id,
        )
        return DispatchResult(
            status="processed",
            kind=WebhookEventType.ACTIVATION,
            grant=grant,
            subscription_id=grant.subscription_id,
        )

    async def _handle_renewal(self, event: WebhookEvent) -> DispatchResult:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repo = SubscriptionRepo(session)
                    sub = await repo.find_by_provider_reference(event.provider_reference)
                    if sub is not None and sub.is_active:
                        await repo.record_renewal(sub.id, event.occurred_at)
        except SQLAlchemyError as exc:
            raise StorageError() from exc

        if sub is None or sub.status == SubscriptionStatus.EXPIRED.value:
            # Renewal arrived before the activation, or after the row lapsed.
            logger.warning(
                f"[WEBHOOK] Renewal for {event.provider_reference} has no active subscription, "
                f"activating implicitly"
            )
            self._require_fields(event, WebhookEventType.RENEWAL)
            now = self.clock()
            grant = await self.engine.activate_plan(
                event.user_id,
                event.plan_id,
                provider_reference=event.provider_reference,
                now=now,
                source_event_id=event.event_id,
            )
            if grant.subscription_id:
                await self._record_renewal(
                    grant.subscription_id, event.occurred_at, pending=not grant.granted
                )
            return DispatchResult(
                status="implicit_activation",
                kind=WebhookEventType.RENEWAL,
                grant=grant,
                subscription_id=grant.subscription_id,
            )

        if sub.status == SubscriptionStatus.CANCELLED.value:
            logger.warning(
                f"[WEBHOOK] Renewal for cancelled subscription {sub.id} "
                f"({event.provider_reference}) ignored"
            )
            return DispatchResult(
                status="ignored",
                kind=WebhookEventType.RENEWAL,
                subscription_id=sub.id,
                details={"reason": "subscription_cancelled"},
            )

        grant = await self.engine.grant_periodic(
            sub.user_id, sub.id, now=self.clock(), source_event_id=event.event_id
        )
        return DispatchResult(
            status="processed",
            kind=WebhookEventType.RENEWAL,
            grant=grant,
            subscription_id=sub.id,
        )

    async def _handle_cancellation(self, event: WebhookEvent) -> DispatchResult:
        sub = await self.lifecycle.cancel_by_reference(event.provider_reference, now=self.clock())
        if sub is None:
            return DispatchResult(
                status="not_found",
                kind=WebhookEventType.CANCELLATION,
                details={"provider_reference": event.provider_reference},
            )
        return DispatchResult(
            status="processed",
            kind=WebhookEventType.CANCELLATION,
            subscription_id=sub.id,
        )

    async def _record_renewal(
        self, subscription_id: str, occurred_at: datetime, *, pending: bool
    ) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await SubscriptionRepo(session).record_renewal(
                        subscription_id, occurred_at, pending=pending
                    )
        except SQLAlchemyError as exc:
            raise StorageError() from exc

    @staticmethod
    def _require_fields(event: WebhookEvent, kind: WebhookEventType) -> None:
        if not event.user_id or not event.plan_id:
            raise WebhookError(
                f"{kind.value} event is missing user_id or plan_id",
                event_id=event.event_id,
                event_type=event.type,
            )
