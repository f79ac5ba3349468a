"""
Playground Gateway - Main FastAPI Application

This module wires the quota ledger and the webhook delivery engine into the
HTTP surface of the AI playground gateway. Components are created once per
process by ``create_app`` and started/stopped with the application lifespan.

Run with ``python -m src.gateway.main`` or, under uvicorn directly,
``uvicorn src.gateway.main:create_app --factory``. Settings come from the
environment in both cases.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core.config import GatewaySettings
from src.dashboard.routes import router as dashboard_router
from src.gateway.orchestrator import GatewayOrchestrator
from src.quota.exceptions import ConcurrencyExceeded, QuotaExceeded
from src.quota.ledger import QuotaLedger
from src.quota.routes import router as quota_router
from src.quota.store import create_store
from src.webhooks.exceptions import WebhookError
from src.webhooks.routes import router as webhooks_router
from src.webhooks.webhook_manager import WebhookManager

VERSION = "0.1.0"

log = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    await app.state.ledger.start()
    await app.state.webhooks.start()
    log.info("Gateway started")
    yield
    # Shutdown
    await app.state.webhooks.stop()
    await app.state.ledger.stop()
    log.info("Gateway stopped")


async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    headers = {}
    if not isinstance(exc, ConcurrencyExceeded) and exc.window:
        interval_ms = request.app.state.ledger.settings.reset_intervals[exc.window.value]
        headers["Retry-After"] = str(max(1, interval_ms // 1000))
    return JSONResponse(status_code=429, content={"detail": exc.to_dict()}, headers=headers)


async def webhook_error_handler(request: Request, exc: WebhookError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


def create_app(
    settings: Optional[GatewaySettings] = None,
    ledger: Optional[QuotaLedger] = None,
    webhooks: Optional[WebhookManager] = None,
) -> FastAPI:
    """Build the gateway application and its single set of components"""
    settings = settings or GatewaySettings.from_env()
    ledger = ledger or QuotaLedger(settings.quota, create_store(settings.quota))
    webhooks = webhooks or WebhookManager(settings=settings.webhooks)

    app = FastAPI(
        title="Playground Gateway",
        description="Quota enforcement and webhook delivery for the AI playground",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.webhooks = webhooks
    app.state.orchestrator = GatewayOrchestrator(ledger, webhooks)

    app.add_exception_handler(QuotaExceeded, quota_exceeded_handler)
    app.add_exception_handler(WebhookError, webhook_error_handler)

    app.include_router(quota_router)
    app.include_router(webhooks_router)
    app.include_router(dashboard_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "quota": await app.state.ledger.health_check(),
            "webhooks": app.state.webhooks.health_check(),
            "version": VERSION,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    gateway_settings = GatewaySettings.from_env()
    configure_logging(gateway_settings.log_level)
    uvicorn.run(
        create_app(gateway_settings),
        host=gateway_settings.host,
        port=gateway_settings.port,
    )
