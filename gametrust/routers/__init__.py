"""API routers for the GameTrust escrow backend."""
from fastapi import APIRouter

from . import alerts, disputes, health, orders


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(orders.router)
    api_router.include_router(disputes.router)
    api_router.include_router(alerts.router)
    return api_router
