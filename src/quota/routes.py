"""Quota and usage API routes"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.gateway.dependencies import get_ledger, get_orchestrator, get_principal_id
from src.gateway.orchestrator import GatewayOrchestrator
from src.quota.ledger import QuotaLedger

router = APIRouter(prefix="/api/v1", tags=["quota"])


class AdmitRequest(BaseModel):
    tokens_requested: int = Field(0, ge=0, description="Tokens the unit of work expects to use")
    request_type: str = Field("default", description="Kind of work, e.g. chat or video")


class CompleteRequest(BaseModel):
    tokens_used: int = Field(0, ge=0)
    cost: float = Field(0.0, ge=0)
    request_type: str = "default"
    success: bool = True
    job_id: Optional[str] = Field(None, description="Announce job.completed / job.failed for this job")
    error: Optional[str] = None


@router.get("/quota")
async def get_quota(
    principal_id: str = Depends(get_principal_id),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Current principal's quota information"""
    return await ledger.get_quota_info(principal_id)


@router.post("/quota/reset")
async def reset_quota(
    principal_id: str = Depends(get_principal_id),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Reset the current principal's rolling counters"""
    return await ledger.reset_principal(principal_id)


@router.get("/quota/stats")
async def get_usage_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    principal_id: str = Depends(get_principal_id),
    ledger: QuotaLedger = Depends(get_ledger),
):
    stats = await ledger.get_usage_stats(principal_id, start=start, end=end)
    return stats.model_dump()


@router.post("/usage/admit")
async def admit(
    request: AdmitRequest,
    principal_id: str = Depends(get_principal_id),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
):
    """
    Gate a unit of work before it is dispatched upstream

    Rejections surface as 429 with the violated window and dimension.
    """
    result = await orchestrator.admit(principal_id, request.tokens_requested, request.request_type)
    return result.model_dump()


@router.post("/usage/complete")
async def complete(
    request: CompleteRequest,
    principal_id: str = Depends(get_principal_id),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
):
    """Record the outcome of an admitted unit of work"""
    usage = await orchestrator.complete(
        principal_id,
        tokens_used=request.tokens_used,
        cost=request.cost,
        request_type=request.request_type,
        success=request.success,
        job_id=request.job_id,
        error=request.error,
    )
    return {
        "principal_id": principal_id,
        "total_requests": usage.total_requests,
        "total_tokens": usage.total_tokens,
        "total_cost": usage.total_cost,
        "concurrent_requests": usage.concurrent_requests,
    }
