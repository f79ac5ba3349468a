"""Playground Gateway Python SDK Client"""

import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional, Union
import httpx


def verify_webhook_signature(
    body: Union[bytes, str],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Verify the X-Webhook-Signature header of a received delivery

    Pass the raw request body exactly as received; the gateway signs the
    canonical JSON bytes it sends.
    """
    if not secret:
        return True
    if not signature:
        return False
    if isinstance(body, str):
        body = body.encode("utf-8")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not signature.startswith("sha256="):
        signature = "sha256=" + signature
    return hmac.compare_digest(expected, signature)


def parse_webhook(body: Union[bytes, str]) -> Dict[str, Any]:
    """Decode a delivery envelope: event, timestamp, deliveryId, payload, metadata"""
    return json.loads(body)


class PlaygroundClient:
    """Python SDK for the Playground Gateway"""

    def __init__(
        self,
        principal_id: str,
        base_url: str = "http://localhost:8000",
        admin_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.principal_id = principal_id
        self.base_url = base_url.rstrip("/")
        headers = {
            "X-Principal-ID": principal_id,
            "Content-Type": "application/json",
        }
        if admin_key:
            headers["X-Admin-Key"] = admin_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=60.0,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self.client.request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()

    # Quota

    async def admit(self, tokens_requested: int = 0, request_type: str = "default") -> Dict[str, Any]:
        """
        Ask the gateway to admit a unit of work

        Raises:
            httpx.HTTPStatusError: 429 when a quota window or the concurrency cap is hit
        """
        return await self._request(
            "POST",
            "/api/v1/usage/admit",
            json={"tokens_requested": tokens_requested, "request_type": request_type},
        )

    async def complete(
        self,
        tokens_used: int = 0,
        cost: float = 0.0,
        request_type: str = "default",
        success: bool = True,
        job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Report the outcome of admitted work"""
        payload: Dict[str, Any] = {
            "tokens_used": tokens_used,
            "cost": cost,
            "request_type": request_type,
            "success": success,
        }
        if job_id:
            payload["job_id"] = job_id
        if error:
            payload["error"] = error
        return await self._request("POST", "/api/v1/usage/complete", json=payload)

    async def get_quota(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/v1/quota")

    async def reset_quota(self) -> Dict[str, Any]:
        return await self._request("POST", "/api/v1/quota/reset")

    # Webhooks

    async def register_webhook(
        self,
        url: str,
        events: Optional[List[str]] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        """Register a webhook; the response carries the signing secret"""
        payload = {"url": url, **options}
        if events:
            payload["events"] = events
        return await self._request("POST", "/api/v1/webhooks", json=payload)

    async def list_webhooks(self, **filters: Any) -> Dict[str, Any]:
        return await self._request("GET", "/api/v1/webhooks", params=filters)

    async def update_webhook(self, webhook_id: str, **updates: Any) -> Dict[str, Any]:
        return await self._request("PUT", f"/api/v1/webhooks/{webhook_id}", json=updates)

    async def delete_webhook(self, webhook_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/api/v1/webhooks/{webhook_id}")

    async def get_deliveries(self, webhook_id: str, **filters: Any) -> Dict[str, Any]:
        return await self._request("GET", f"/api/v1/webhooks/{webhook_id}/deliveries", params=filters)

    async def test_webhook(self, webhook_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/v1/webhooks/{webhook_id}/test")

    async def list_events(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/v1/webhooks/events")
        return data.get("events", [])

    async def close(self):
        """Close the client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
