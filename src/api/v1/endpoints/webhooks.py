"""Inbound payment provider events."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from src.api.deps import get_webhook_dispatcher, verify_webhook_token
from src.services.webhook_dispatcher import WebhookEvent, WebhookEventDispatcher


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", dependencies=[Depends(verify_webhook_token)])
async def payment_event(
    event: WebhookEvent,
    dispatcher: WebhookEventDispatcher = Depends(get_webhook_dispatcher),
):
    """
    Accept an event the payment collaborator has already verified and parsed.

    Replays are safe: a repeated activation reports ``already_active`` and a
    repeated renewal reports a skipped grant.
    """

    result = await dispatcher.dispatch(event)
    return result.to_dict()
