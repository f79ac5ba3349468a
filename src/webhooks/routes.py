"""Webhook management API routes"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.gateway.dependencies import get_principal_id, get_webhook_manager, verify_admin_key
from src.models.webhook import EVENT_CATALOG, EVENT_VOCABULARY_VERSION
from src.webhooks.webhook_manager import WebhookManager

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


class WebhookCreateRequest(BaseModel):
    url: Optional[str] = None
    events: Optional[List[str]] = None
    secret: Optional[str] = None
    active: bool = True
    description: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout: Optional[int] = Field(None, description="Per-attempt timeout in milliseconds")
    max_retries: Optional[int] = None
    retry_delay: Optional[int] = Field(None, description="Backoff base in milliseconds")


class WebhookUpdateRequest(BaseModel):
    url: Optional[str] = None
    events: Optional[List[str]] = None
    active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout: Optional[int] = None
    max_retries: Optional[int] = None
    retry_delay: Optional[int] = None


class TriggerRequest(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    principal_id: Optional[str] = None


@router.post("", status_code=201)
async def register_webhook(
    request: WebhookCreateRequest,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Register a new webhook; the signing secret is only returned here"""
    webhook = manager.registry.register(principal_id, **request.model_dump())
    return webhook.public_dict(include_secret=True)


@router.get("")
async def list_webhooks(
    limit: int = 10,
    offset: int = 0,
    event: Optional[str] = None,
    active: Optional[bool] = None,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    result = manager.registry.list_webhooks(
        principal_id=principal_id,
        event=event,
        active=active,
        limit=limit,
        offset=offset,
    )
    result["webhooks"] = [w.public_dict() for w in result["webhooks"]]
    return result


@router.get("/events")
async def list_events(principal_id: str = Depends(get_principal_id)):
    """Recognised event names and their payload shapes"""
    return {
        "version": EVENT_VOCABULARY_VERSION,
        "events": [{"name": event.value, **info} for event, info in EVENT_CATALOG.items()],
    }


@router.post("/trigger")
async def trigger_event(
    request: TriggerRequest,
    admin_key: str = Depends(verify_admin_key),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Trigger an event for every matching webhook (admin only)"""
    outcomes = await manager.trigger_event(
        request.event,
        request.payload,
        principal_id=request.principal_id,
    )
    return {
        "event": request.event,
        "deliveries": [o.model_dump(mode="json") for o in outcomes],
        "matched": len(outcomes),
        "succeeded": sum(1 for o in outcomes if o.success),
        "timestamp": manager.clock.isoformat(),
    }


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: str,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    return manager.registry.get_owned(principal_id, webhook_id).public_dict()


@router.put("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    webhook = manager.registry.update(
        principal_id,
        webhook_id,
        request.model_dump(exclude_none=True),
    )
    return webhook.public_dict()


@router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: str,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    manager.registry.delete(principal_id, webhook_id)
    return {"success": True}


@router.get("/{webhook_id}/deliveries")
async def get_deliveries(
    webhook_id: str,
    limit: int = 50,
    offset: int = 0,
    success: Optional[bool] = None,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Delivery history for one of the caller's webhooks"""
    manager.registry.get_owned(principal_id, webhook_id)
    history = manager.registry.get_delivery_history(
        webhook_id,
        success=success,
        limit=limit,
        offset=offset,
    )
    history["deliveries"] = [d.model_dump(mode="json") for d in history["deliveries"]]
    return history


@router.post("/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    principal_id: str = Depends(get_principal_id),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Send a webhook.test delivery and report how it went"""
    outcome = await manager.send_test(principal_id, webhook_id)
    return outcome.model_dump(mode="json")
