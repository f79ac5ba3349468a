"""
Webhook Delivery Engine

Delivers signed event envelopes to registered targets.

Delivery policy:
- Responses below 500 end the chain. 2xx counts as success; 3xx and 4xx are
  recorded as failed deliveries but are never retried.
- Timeouts, network errors and 5xx responses are retried with linear backoff
  (``retry_delay * (retry_count + 1)``) until the target's ``max_retries`` is
  used up, then ``DeliveryExhausted`` is raised.
- Every attempt lands in the target's bounded delivery history.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import httpx
from httpx import AsyncClient, Limits, Timeout

from src.core.clock import Clock, system_clock
from src.core.config import WebhookSettings
from src.core.scheduler import PeriodicTask
from src.models.webhook import (
    WILDCARD_EVENT,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryResult,
    DeliveryState,
    EnvelopeMetadata,
    WebhookEnvelope,
    WebhookEventType,
    WebhookRegistration,
    is_known_event,
)
from src.webhooks import signing
from src.webhooks.exceptions import (
    DeliveryError,
    DeliveryExhausted,
    DeliveryHTTPError,
    DeliveryNetworkError,
    DeliveryTimeout,
    WebhookValidationError,
)
from src.webhooks.registry import WebhookRegistry

log = logging.getLogger(__name__)


class WebhookManager:
    """Manage webhook deliveries"""

    def __init__(
        self,
        registry: Optional[WebhookRegistry] = None,
        settings: Optional[WebhookSettings] = None,
        clock: Optional[Clock] = None,
        client: Optional[AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.settings = settings or WebhookSettings()
        self.clock = clock or system_clock
        self.registry = registry or WebhookRegistry(self.settings, self.clock)
        self._owns_client = client is None
        self.client = client or AsyncClient(
            limits=Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0,
            ),
            timeout=Timeout(self.settings.timeout_ms / 1000, connect=10.0),
        )
        self._sleep = sleep or asyncio.sleep
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(self.settings.max_parallel_deliveries)
            if self.settings.max_parallel_deliveries
            else None
        )
        self._pending: Set[asyncio.Task] = set()
        self._pruner = PeriodicTask(
            "webhook-history-prune",
            self.settings.prune_interval_seconds,
            self.registry.prune_delivery_history,
        )

    async def start(self):
        """Start the hourly delivery-history prune"""
        self._pruner.start()

    async def stop(self):
        """Stop the prune loop, let in-flight dispatches finish, close the HTTP client"""
        await self._pruner.stop()

        if self._pending:
            _, pending = await asyncio.wait(
                set(self._pending), timeout=self.settings.shutdown_grace_seconds
            )
            for task in pending:
                task.cancel()
            if pending:
                log.warning("Cancelled %s webhook dispatch(es) at shutdown", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_client:
            await self.client.aclose()

    # Wire format

    def build_envelope(
        self,
        webhook: WebhookRegistration,
        event: str,
        payload: Dict[str, Any],
        delivery_id: Optional[str] = None,
    ) -> WebhookEnvelope:
        return WebhookEnvelope(
            event=event,
            timestamp=self.clock.isoformat(),
            delivery_id=delivery_id or f"dlv_{uuid.uuid4().hex}",
            payload=payload,
            metadata=EnvelopeMetadata(
                webhook_id=webhook.id,
                principal_id=webhook.principal_id,
            ),
        )

    def build_headers(
        self,
        webhook: WebhookRegistration,
        envelope: WebhookEnvelope,
        signature: Optional[str],
    ) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.settings.user_agent,
            "X-Webhook-Event": envelope.event,
            "X-Webhook-Delivery-ID": envelope.delivery_id,
            "X-Webhook-Timestamp": envelope.timestamp,
            **webhook.metadata.headers,
        }
        if signature:
            headers[self.settings.signature_header] = signature
        return headers

    def sign_envelope(self, envelope: Dict[str, Any], secret: Optional[str]) -> Optional[str]:
        if not self.settings.enable_signing:
            return None
        return signing.sign(envelope, secret)

    def verify_signature(self, envelope: Dict[str, Any], signature: Optional[str], secret: Optional[str]) -> bool:
        """Recompute the signature of an envelope and compare it with ``signature``"""
        if not self.settings.enable_signing:
            return True
        return signing.verify(envelope, signature, secret)

    # Delivery

    async def _post(self, url: str, body: bytes, headers: Dict[str, str], timeout_ms: int) -> int:
        """One HTTP attempt. Returns the status code for responses below 500."""
        try:
            if self._semaphore:
                async with self._semaphore:
                    response = await self.client.post(
                        url, content=body, headers=headers, timeout=timeout_ms / 1000
                    )
            else:
                response = await self.client.post(
                    url, content=body, headers=headers, timeout=timeout_ms / 1000
                )
        except httpx.TimeoutException as e:
            raise DeliveryTimeout(f"Timed out after {timeout_ms}ms: {e}") from e
        except httpx.RequestError as e:
            raise DeliveryNetworkError(f"Network error: {e}") from e

        if response.status_code >= 500:
            raise DeliveryHTTPError(response.status_code)
        return response.status_code

    async def deliver(
        self,
        webhook: WebhookRegistration,
        event: str,
        payload: Dict[str, Any],
        timeout: Optional[int] = None,
        retry_count: int = 0,
    ) -> DeliveryResult:
        """
        Deliver one event to one webhook, retrying transient failures

        The envelope (and so the delivery id, timestamp and signature) is built
        once and resent unchanged on every retry.

        Raises:
            DeliveryExhausted: the last allowed attempt failed, or an attempt failed
                with an error that is not retryable
        """
        timeout_ms = timeout or webhook.metadata.timeout
        max_retries = webhook.metadata.max_retries
        retry_delay = webhook.metadata.retry_delay

        envelope = self.build_envelope(webhook, event, payload)
        wire = envelope.to_wire()
        body = signing.canonical_json(wire)
        signature = self.sign_envelope(wire, webhook.secret)
        headers = self.build_headers(webhook, envelope, signature)

        attempts = 0
        while True:
            attempts += 1
            attempted_at = self.clock.now()
            try:
                status_code = await self._post(webhook.url, body, headers, timeout_ms)
            except DeliveryError as e:
                self.registry.record_delivery(
                    DeliveryAttempt(
                        delivery_id=envelope.delivery_id,
                        webhook_id=webhook.id,
                        event=event,
                        success=False,
                        status_code=e.status_code,
                        error=str(e),
                        timestamp=attempted_at,
                        retry_count=retry_count,
                    )
                )
                if e.retryable and retry_count < max_retries:
                    log.warning(
                        "Webhook delivery %s to %s failed, retrying (%s/%s): %s",
                        envelope.delivery_id,
                        webhook.id,
                        retry_count + 1,
                        max_retries,
                        e,
                    )
                    await self._sleep(retry_delay * (retry_count + 1) / 1000)
                    retry_count += 1
                    continue

                log.error(
                    "Webhook delivery %s to %s failed after %s attempt(s): %s",
                    envelope.delivery_id,
                    webhook.id,
                    attempts,
                    e,
                )
                raise DeliveryExhausted(envelope.delivery_id, attempts, e) from e

            success = 200 <= status_code < 300
            error = None if success else f"HTTP {status_code}"
            self.registry.record_delivery(
                DeliveryAttempt(
                    delivery_id=envelope.delivery_id,
                    webhook_id=webhook.id,
                    event=event,
                    success=success,
                    status_code=status_code,
                    error=error,
                    timestamp=attempted_at,
                    retry_count=retry_count,
                )
            )
            if success:
                log.debug(
                    "Webhook %s delivered to %s (status %s)", envelope.delivery_id, webhook.id, status_code
                )
            else:
                log.warning(
                    "Webhook %s rejected by %s (status %s), not retrying",
                    envelope.delivery_id,
                    webhook.id,
                    status_code,
                )
            return DeliveryResult(
                delivery_id=envelope.delivery_id,
                webhook_id=webhook.id,
                event=event,
                state=DeliveryState.DELIVERED,
                success=success,
                status_code=status_code,
                error=error,
                retry_count=retry_count,
                attempts=attempts,
                timestamp=attempted_at,
            )

    def _outcome(self, webhook: WebhookRegistration, result: Any) -> DeliveryOutcome:
        if isinstance(result, DeliveryResult):
            return DeliveryOutcome(
                webhook_id=webhook.id,
                success=result.success,
                state=result.state,
                delivery_id=result.delivery_id,
                status_code=result.status_code,
                error=result.error,
                attempts=result.attempts,
                timestamp=self.clock.now(),
            )
        if isinstance(result, DeliveryExhausted):
            return DeliveryOutcome(
                webhook_id=webhook.id,
                success=False,
                state=DeliveryState.EXHAUSTED,
                delivery_id=result.delivery_id,
                status_code=result.status_code,
                error=str(result),
                attempts=result.attempts,
                timestamp=self.clock.now(),
            )
        log.error("Unexpected webhook delivery failure for %s", webhook.id, exc_info=result)
        return DeliveryOutcome(
            webhook_id=webhook.id,
            success=False,
            state=DeliveryState.EXHAUSTED,
            error=str(result) or type(result).__name__,
            timestamp=self.clock.now(),
        )

    async def trigger_event(
        self,
        event: str,
        payload: Dict[str, Any],
        principal_id: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> List[DeliveryOutcome]:
        """
        Deliver ``event`` to every matching active webhook concurrently

        One target failing never affects the others; the returned list always
        has one outcome per matched webhook, and is empty when nothing matched.
        """
        if event == WILDCARD_EVENT or not is_known_event(event):
            raise WebhookValidationError("event", f"unknown event {event!r}")

        webhooks = self.registry.find_matching(event, principal_id)
        if not webhooks:
            log.debug("No matching webhooks for %s (principal=%s)", event, principal_id)
            return []

        log.info("Triggering %s webhook(s) for %s", len(webhooks), event)
        results = await asyncio.gather(
            *(self.deliver(w, event, payload, timeout=timeout) for w in webhooks),
            return_exceptions=True,
        )
        outcomes = [self._outcome(w, r) for w, r in zip(webhooks, results)]

        log.info(
            "Webhook deliveries for %s completed: %s succeeded, %s failed",
            event,
            sum(1 for o in outcomes if o.success),
            sum(1 for o in outcomes if not o.success),
        )
        return outcomes

    def dispatch_event(
        self,
        event: str,
        payload: Dict[str, Any],
        principal_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Run ``trigger_event`` in the background; ``stop()`` waits for it"""
        task = asyncio.get_running_loop().create_task(
            self.trigger_event(event, payload, principal_id=principal_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception():
            log.error("Background webhook dispatch failed", exc_info=task.exception())

    async def send_test(self, principal_id: str, webhook_id: str) -> DeliveryOutcome:
        """Deliver a ``webhook.test`` event to one of the caller's webhooks"""
        webhook = self.registry.get_owned(principal_id, webhook_id)
        payload = {
            "test": True,
            "timestamp": self.clock.isoformat(),
            "message": "This is a test webhook delivery",
        }
        try:
            result = await self.deliver(webhook, WebhookEventType.WEBHOOK_TEST.value, payload)
        except DeliveryExhausted as e:
            return self._outcome(webhook, e)
        return self._outcome(webhook, result)

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": self.clock.isoformat(),
            **self.registry.stats(),
            "pending_dispatches": len(self._pending),
            "pruner_running": self._pruner.running,
            "config": {
                "max_webhooks_per_principal": self.settings.max_webhooks_per_principal,
                "max_retries": self.settings.max_retries,
                "enable_signing": self.settings.enable_signing,
            },
        }
