"""Shared FastAPI dependencies."""
from __future__ import annotations

import hmac
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.auth.jwt import require_auth
from src.core.config import settings
from src.db.session import get_session_factory
from src.services.access_trigger import on_authenticated_access
from src.services.grant_engine import CreditGrantEngine
from src.services.lifecycle import SubscriptionLifecycleManager
from src.services.reconciliation import ReconciliationJob
from src.services.rewards import RewardService
from src.services.webhook_dispatcher import WebhookEventDispatcher


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Session factory used by every request; tests override this one dependency."""

    return get_session_factory()


async def get_db_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> AsyncGenerator[AsyncSession, None]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_grant_engine(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> CreditGrantEngine:
    return CreditGrantEngine(factory)


def get_reward_service(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> RewardService:
    return RewardService(factory)


def get_lifecycle_manager(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(factory)


def get_webhook_dispatcher(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    engine: CreditGrantEngine = Depends(get_grant_engine),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> WebhookEventDispatcher:
    return WebhookEventDispatcher(factory, engine, lifecycle)


def get_reconciliation_job(
    factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
    engine: CreditGrantEngine = Depends(get_grant_engine),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
) -> ReconciliationJob:
    return ReconciliationJob(factory, engine=engine, lifecycle=lifecycle)


def track_access(
    background_tasks: BackgroundTasks,
    auth: Dict[str, Any] = Depends(require_auth),
    engine: CreditGrantEngine = Depends(get_grant_engine),
) -> Dict[str, Any]:
    """
    ``require_auth`` plus the free-tier access check.

    The check is queued as a background task, so it runs after the response
    is sent and can neither delay nor fail the request.
    """

    background_tasks.add_task(on_authenticated_access, auth["user_id"], engine)
    return auth


def _token_matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def verify_webhook_token(x_webhook_token: Optional[str] = Header(None)) -> None:
    if not _token_matches(x_webhook_token, settings.WEBHOOK_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not _token_matches(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin token required",
        )
