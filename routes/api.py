"""
Central route registration. Paths match what Shopify, the Lightspeed OAuth app and the
external cron are configured with, so routers mount without an /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    dashboard,
    lightspeed_auth,
    sync,
    webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all routers. Call from main.py after creating the FastAPI app."""
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(sync.router, tags=["sync"])
    app.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
    app.include_router(lightspeed_auth.router, prefix="/lightspeed", tags=["lightspeed"])
    if settings.ALLOW_MANUAL_WEBHOOKS:
        logger.warning("ALLOW_MANUAL_WEBHOOKS=true: ?manual=true skips webhook HMAC verification")
