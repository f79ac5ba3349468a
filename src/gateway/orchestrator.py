"""Glue between inbound work, the quota ledger and webhook events"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel

from src.models.quota import AdmissionResult, UsageRecord
from src.models.webhook import WebhookEventType
from src.quota.exceptions import QuotaExceeded
from src.quota.ledger import QuotaLedger
from src.webhooks.webhook_manager import WebhookManager

log = logging.getLogger(__name__)


class WorkResult(BaseModel):
    """What a finished unit of work reports back for accounting"""
    tokens_used: int = 0
    cost: float = 0.0
    output: Any = None


class GatewayOrchestrator:
    """
    Admit, run and account for units of work

    Completion is recorded exactly once per admitted unit, whether the work
    succeeds, raises or is cancelled. Quota rejections and job outcomes are announced as
    webhook events in the background so they never delay the caller.
    """

    def __init__(self, ledger: QuotaLedger, webhooks: WebhookManager):
        self.ledger = ledger
        self.webhooks = webhooks

    async def admit(
        self,
        principal_id: str,
        tokens_requested: int = 0,
        request_type: str = "default",
    ) -> AdmissionResult:
        try:
            return await self.ledger.admit(principal_id, tokens_requested, request_type)
        except QuotaExceeded as e:
            self.webhooks.dispatch_event(
                WebhookEventType.QUOTA_EXCEEDED.value,
                {
                    "principalId": principal_id,
                    "requestType": request_type,
                    "tokensRequested": tokens_requested,
                    **e.to_dict(),
                },
                principal_id=principal_id,
            )
            raise

    async def complete(
        self,
        principal_id: str,
        tokens_used: int = 0,
        cost: float = 0.0,
        request_type: str = "default",
        success: bool = True,
        job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> UsageRecord:
        usage = await self.ledger.record_completion(
            principal_id,
            tokens_used=tokens_used,
            cost=cost,
            request_type=request_type,
            success=success,
        )
        if job_id:
            if success:
                event = WebhookEventType.JOB_COMPLETED
                payload = {"jobId": job_id, "requestType": request_type, "tokensUsed": tokens_used, "cost": cost}
            else:
                event = WebhookEventType.JOB_FAILED
                payload = {"jobId": job_id, "requestType": request_type, "error": error or "unknown error"}
            self.webhooks.dispatch_event(event.value, payload, principal_id=principal_id)
        return usage

    async def run(
        self,
        principal_id: str,
        work: Callable[[], Awaitable[WorkResult]],
        tokens_requested: int = 0,
        request_type: str = "default",
        job_id: Optional[str] = None,
    ) -> WorkResult:
        """Admit ``work``, await it and record its completion"""
        await self.admit(principal_id, tokens_requested, request_type)
        try:
            result = await work()
        except Exception as e:
            log.warning("Work for %s failed (%s): %s", principal_id, request_type, e)
            await self.complete(
                principal_id,
                request_type=request_type,
                success=False,
                job_id=job_id,
                error=str(e),
            )
            raise
        except asyncio.CancelledError:
            log.warning("Work for %s cancelled (%s)", principal_id, request_type)
            await self.complete(
                principal_id,
                request_type=request_type,
                success=False,
                job_id=job_id,
                error="cancelled",
            )
            raise

        await self.complete(
            principal_id,
            tokens_used=result.tokens_used,
            cost=result.cost,
            request_type=request_type,
            success=True,
            job_id=job_id,
        )
        return result
