"""
Billing exceptions and their HTTP rendering.

Every engine error derives from :class:`BillingError` so callers can catch the
whole family at once. A raced or repeated grant is never an exception; it is
reported as a skipped :class:`~src.services.grant_engine.GrantResult`.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base exception for credit and subscription errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: str = "BILLING_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class PlanConfigurationError(BillingError):
    """
    A plan is missing or cannot fund a grant.

    This is a deployment problem, not a user error, so it surfaces as a 500.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, plan_id: Optional[str] = None) -> None:
        super().__init__(
            message=message,
            code="PLAN_CONFIGURATION_ERROR",
            details={"plan_id": plan_id} if plan_id else {},
        )
        self.plan_id = plan_id


class SubscriptionNotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(
        self,
        message: str = "Subscription not found",
        subscription_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            code="SUBSCRIPTION_NOT_FOUND",
            details={"subscription_id": subscription_id} if subscription_id else {},
        )
        self.subscription_id = subscription_id


class InvalidTransitionError(BillingError):
    """Raised when a status change is not allowed by the lifecycle rules."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, subscription_id: str, current: str, target: str) -> None:
        super().__init__(
            message=f"Cannot move subscription from {current} to {target}",
            code="INVALID_TRANSITION",
            details={
                "subscription_id": subscription_id,
                "current": current,
                "target": target,
            },
        )


class SubscriptionConflictError(BillingError):
    """A concurrent activation won the single-active-row constraint."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, user_id: str) -> None:
        super().__init__(
            message="Another plan activation for this user is in progress",
            code="SUBSCRIPTION_CONFLICT",
            details={"user_id": user_id},
        )


class InvalidPlanChangeError(BillingError):
    """The caller asked for a plan change their subscription cannot make."""

    def __init__(self, message: str, plan_id: Optional[str] = None) -> None:
        super().__init__(
            message=message,
            code="INVALID_PLAN_CHANGE",
            details={"plan_id": plan_id} if plan_id else {},
        )


class RewardAlreadyClaimedError(BillingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, reward: str, user_id: str) -> None:
        super().__init__(
            message=f"{reward} already claimed today",
            code="REWARD_ALREADY_CLAIMED",
            details={"user_id": user_id},
        )


class StorageError(BillingError):
    """The atomic write failed as a whole; the caller may retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Credit storage unavailable, retry later") -> None:
        super().__init__(message=message, code="STORAGE_ERROR")


class WebhookError(BillingError):
    def __init__(
        self,
        message: str = "Webhook processing error",
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if event_id:
            details["event_id"] = event_id
        if event_type:
            details["event_type"] = event_type
        super().__init__(message=message, code="WEBHOOK_ERROR", details=details)


async def _billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, _billing_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
