"""Dashboard API routes"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from src.gateway.dependencies import get_ledger, get_webhook_manager, verify_admin_key
from src.quota.ledger import QuotaLedger
from src.webhooks.webhook_manager import WebhookManager

router = APIRouter(
    prefix="/api/dashboard",
    tags=["dashboard"],
    dependencies=[Depends(verify_admin_key)],
)


class QuotaUpdateRequest(BaseModel):
    requests_per_minute: Optional[int] = None
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None
    tokens_per_minute: Optional[int] = None
    tokens_per_hour: Optional[int] = None
    tokens_per_day: Optional[int] = None
    max_concurrent_requests: Optional[int] = None


class CleanupRequest(BaseModel):
    usage_max_age_days: float = 30
    delivery_max_age_days: Optional[float] = None


@router.get("/stats")
async def get_stats(
    ledger: QuotaLedger = Depends(get_ledger),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Get overall gateway statistics"""
    quota_health = await ledger.health_check()
    return {
        "principals": quota_health["total_principals"],
        "active_principals": quota_health["active_principals"],
        "total_requests": quota_health["total_requests"],
        "webhooks": manager.registry.stats(),
        "timestamp": datetime.now().isoformat(),
    }


@router.get("/quotas/{principal_id}")
async def get_principal_quota(principal_id: str, ledger: QuotaLedger = Depends(get_ledger)):
    return await ledger.get_quota_info(principal_id)


@router.put("/quotas/{principal_id}")
async def update_principal_quota(
    principal_id: str,
    request: QuotaUpdateRequest,
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Change a principal's budget"""
    try:
        limits = await ledger.set_quota(principal_id, **request.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))
    return limits.model_dump()


@router.post("/quotas/{principal_id}/reset")
async def reset_principal_quota(principal_id: str, ledger: QuotaLedger = Depends(get_ledger)):
    return await ledger.reset_principal(principal_id)


@router.get("/principals/{principal_id}/usage")
async def get_principal_usage(
    principal_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Get principal usage statistics"""
    stats = await ledger.get_usage_stats(principal_id, start=start, end=end)
    return stats.model_dump()


@router.get("/health/detailed")
async def detailed_health(
    ledger: QuotaLedger = Depends(get_ledger),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Detailed health check"""
    store_health = await ledger.store.health_check()
    return {
        "status": "healthy",
        "quota": await ledger.health_check(),
        "quota_store": {"backend": type(ledger.store).__name__, "healthy": store_health},
        "webhooks": manager.health_check(),
        "timestamp": datetime.now().isoformat(),
    }


@router.post("/maintenance/cleanup")
async def cleanup(
    request: CleanupRequest,
    ledger: QuotaLedger = Depends(get_ledger),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Drop old usage history, idle principals and old delivery attempts"""
    return {
        "usage": {"cleaned": await ledger.cleanup_old_usage(request.usage_max_age_days)},
        "deliveries": {"cleaned": manager.registry.prune_delivery_history(request.delivery_max_age_days)},
        "timestamp": datetime.now().isoformat(),
    }
