"""API routers for the AliveHome payment core."""
from fastapi import APIRouter

from . import health, payments, subscriptions, transactions, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    # Webhook paths live under /payments and must be matched first.
    api_router.include_router(webhooks.router)
    api_router.include_router(payments.router)
    api_router.include_router(transactions.router)
    api_router.include_router(subscriptions.router)
    return api_router
