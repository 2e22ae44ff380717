"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from safehaven.api.health import router as health_router
from safehaven.api.webhooks import router as webhooks_router
from safehaven.api.webhook_events import router as webhook_events_router


def build_api_router(webhook_path: str) -> APIRouter:
    """Mount the webhook routes under the configured ingress path."""
    webhook_path = "/" + webhook_path.strip("/")

    api_router = APIRouter()
    api_router.include_router(health_router)
    api_router.include_router(webhooks_router, prefix=webhook_path)
    api_router.include_router(webhook_events_router, prefix=webhook_path)
    return api_router
