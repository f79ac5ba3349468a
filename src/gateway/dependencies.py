"""FastAPI dependencies shared by the routers"""

from typing import Optional
from fastapi import Header, HTTPException, Request

from src.gateway.orchestrator import GatewayOrchestrator
from src.quota.ledger import QuotaLedger
from src.webhooks.webhook_manager import WebhookManager


def get_ledger(request: Request) -> QuotaLedger:
    return request.app.state.ledger


def get_webhook_manager(request: Request) -> WebhookManager:
    return request.app.state.webhooks


def get_orchestrator(request: Request) -> GatewayOrchestrator:
    return request.app.state.orchestrator


def get_principal_id(
    principal_id: Optional[str] = Header(None, alias="X-Principal-ID"),
) -> str:
    """Principal resolved by the authentication layer in front of the gateway"""
    if not principal_id:
        raise HTTPException(status_code=401, detail="Missing principal")
    return principal_id


def verify_admin_key(
    request: Request,
    admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """Verify admin API key"""
    expected_key = request.app.state.settings.admin_api_key
    if not expected_key:
        raise HTTPException(status_code=500, detail="Admin key not configured")
    if admin_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return admin_key
