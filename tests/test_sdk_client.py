"""Tests for the Python SDK against an in-process gateway"""

import hashlib
import hmac

import httpx
import pytest
from playground_sdk.client import PlaygroundClient, parse_webhook, verify_webhook_signature

from src.core.config import GatewaySettings, QuotaDefaults, QuotaSettings, WebhookSettings
from src.gateway.main import create_app
from src.webhooks.webhook_manager import WebhookManager


def make_app(receiver):
    settings = GatewaySettings(
        admin_api_key="admin",
        quota=QuotaSettings(defaults=QuotaDefaults(requests_per_minute=1)),
        webhooks=WebhookSettings(retry_delay_ms=0),
    )
    webhooks = WebhookManager(
        settings=settings.webhooks,
        client=httpx.AsyncClient(transport=httpx.MockTransport(receiver)),
    )
    return create_app(settings, webhooks=webhooks)


@pytest.mark.asyncio
async def test_quota_round_trip():
    app = make_app(lambda request: httpx.Response(200))
    transport = httpx.ASGITransport(app=app)

    async with PlaygroundClient("alice", base_url="http://gateway", transport=transport) as sdk:
        admitted = await sdk.admit(tokens_requested=10, request_type="chat")
        assert admitted["allowed"] is True

        totals = await sdk.complete(tokens_used=8, cost=0.01, request_type="chat")
        assert totals["total_tokens"] == 8

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await sdk.admit()
        assert exc_info.value.response.status_code == 429

        quota = await sdk.get_quota()
        assert quota["usage"]["requests"]["total"] == 1
        reset = await sdk.reset_quota()
        assert reset["usage"]["concurrent_requests"] == 0

    await app.state.webhooks.stop()


@pytest.mark.asyncio
async def test_webhook_round_trip_and_receiver_verification():
    received = []

    def receiver(request):
        received.append(request)
        return httpx.Response(200)

    app = make_app(receiver)
    transport = httpx.ASGITransport(app=app)

    async with PlaygroundClient("alice", base_url="http://gateway", transport=transport) as sdk:
        created = await sdk.register_webhook("https://example.com/hook", events=["webhook.test"])
        secret = created["secret"]

        events = await sdk.list_events()
        assert any(e["name"] == "webhook.test" for e in events)

        outcome = await sdk.test_webhook(created["id"])
        assert outcome["success"] is True

        deliveries = await sdk.get_deliveries(created["id"])
        assert deliveries["total"] == 1

        updated = await sdk.update_webhook(created["id"], active=False)
        assert updated["active"] is False
        assert (await sdk.list_webhooks(active=False))["total"] == 1

        assert (await sdk.delete_webhook(created["id"]))["success"] is True

    await app.state.webhooks.stop()

    request = received[0]
    assert verify_webhook_signature(request.content, request.headers["X-Webhook-Signature"], secret)
    assert not verify_webhook_signature(request.content + b" ", request.headers["X-Webhook-Signature"], secret)
    assert parse_webhook(request.content)["event"] == "webhook.test"


def test_verify_webhook_signature_formats():
    body = b'{"event":"job.completed"}'
    digest = hmac.new(b"secret-secret-secret", body, hashlib.sha256).hexdigest()

    assert verify_webhook_signature(body, f"sha256={digest}", "secret-secret-secret")
    assert verify_webhook_signature(body.decode(), digest, "secret-secret-secret")
    assert not verify_webhook_signature(body, None, "secret-secret-secret")
    assert verify_webhook_signature(body, None, None)
