"""Version 1 API router."""
from fastapi import APIRouter

from src.api.v1.endpoints import admin, credits, subscriptions, webhooks

api_router = APIRouter()
api_router.include_router(credits.router)
api_router.include_router(subscriptions.router)
api_router.include_router(webhooks.router)
api_router.include_router(admin.router)
