"""Tests for webhook registration and delivery history"""

from datetime import timedelta

import pytest

from src.core.config import WebhookSettings
from src.models.webhook import DeliveryAttempt
from src.webhooks.exceptions import (
    DuplicateRegistration,
    RegistrationLimitExceeded,
    WebhookNotFound,
    WebhookUnauthorized,
    WebhookValidationError,
)
from src.webhooks.registry import WebhookRegistry


@pytest.fixture
def registry(clock):
    return WebhookRegistry(WebhookSettings(), clock)


def make_attempt(registry, webhook_id, success=True, retry_count=0):
    return DeliveryAttempt(
        delivery_id="d1",
        webhook_id=webhook_id,
        event="job.completed",
        success=success,
        status_code=200 if success else 500,
        timestamp=registry.clock.now(),
        retry_count=retry_count,
    )


def test_register_applies_defaults(registry):
    webhook = registry.register("alice", "https://example.com/hook")

    assert webhook.id.startswith("wh_")
    assert webhook.events == ["*"]
    assert webhook.active
    assert len(webhook.secret) == 64
    assert webhook.metadata.timeout == 10000
    assert webhook.metadata.max_retries == 3
    assert webhook.metadata.retry_delay == 5000
    assert webhook.created_at == webhook.updated_at
    assert registry.get(webhook.id) == webhook


def test_register_keeps_explicit_values(registry):
    webhook = registry.register(
        "alice",
        "https://example.com/hook",
        events=["job.completed", "job.failed"],
        secret="s" * 16,
        description="jobs",
        headers={"X-Team": "ml"},
        timeout=2000,
        max_retries=0,
        retry_delay=0,
    )

    assert webhook.events == ["job.completed", "job.failed"]
    assert webhook.secret == "s" * 16
    assert webhook.metadata.headers == {"X-Team": "ml"}
    assert webhook.metadata.max_retries == 0
    assert webhook.metadata.retry_delay == 0


def test_duplicate_url_rejected_per_principal(registry):
    registry.register("alice", "https://example.com/hook")

    with pytest.raises(DuplicateRegistration):
        registry.register("alice", "https://example.com/hook")

    # Other principals may use the same URL
    registry.register("bob", "https://example.com/hook")


def test_registration_limit(registry):
    for i in range(10):
        registry.register("alice", f"https://example.com/hook/{i}")

    with pytest.raises(RegistrationLimitExceeded) as exc_info:
        registry.register("alice", "https://example.com/hook/10")
    assert exc_info.value.status_code == 409
    assert len(registry.get_principal_webhooks("alice")) == 10


def test_inactive_webhooks_count_towards_limit(clock):
    registry = WebhookRegistry(WebhookSettings(max_webhooks_per_principal=1), clock)
    registry.register("alice", "https://example.com/a", active=False)

    with pytest.raises(RegistrationLimitExceeded):
        registry.register("alice", "https://example.com/b")


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"url": "not-a-url"}, "url"),
        ({"url": "ftp://example.com/hook"}, "url"),
        ({"url": ""}, "url"),
        ({"events": []}, "events"),
        ({"events": ["job.exploded"]}, "events"),
        ({"events": "job.completed"}, "events"),
        ({"secret": "short"}, "secret"),
        ({"timeout": 999}, "timeout"),
        ({"timeout": 60001}, "timeout"),
        ({"max_retries": 11}, "max_retries"),
        ({"retry_delay": -1}, "retry_delay"),
        ({"description": "x" * 501}, "description"),
        ({"headers": {"X-Count": 1}}, "headers"),
    ],
)
def test_register_validation(registry, kwargs, field):
    params = {"url": "https://example.com/hook", **kwargs}

    with pytest.raises(WebhookValidationError) as exc_info:
        registry.register("alice", **params)

    assert exc_info.value.field == field
    assert exc_info.value.status_code == 400
    assert registry.webhooks == {}


def test_update_merges_metadata_and_refreshes_timestamp(registry, clock):
    webhook = registry.register("alice", "https://example.com/hook", description="old", timeout=3000)
    clock.advance(1000)

    updated = registry.update(
        "alice",
        webhook.id,
        {"events": ["job.failed"], "active": False, "metadata": {"description": "new"}, "max_retries": 1},
    )

    assert updated.events == ["job.failed"]
    assert not updated.active
    assert updated.metadata.description == "new"
    assert updated.metadata.max_retries == 1
    assert updated.metadata.timeout == 3000
    assert updated.updated_at > webhook.updated_at
    assert updated.created_at == webhook.created_at
    assert updated.secret == webhook.secret


def test_update_rejects_other_principal_and_unknown_id(registry):
    webhook = registry.register("alice", "https://example.com/hook")

    with pytest.raises(WebhookUnauthorized):
        registry.update("bob", webhook.id, {"active": False})
    with pytest.raises(WebhookNotFound):
        registry.update("alice", "wh_missing", {"active": False})
    assert registry.get(webhook.id).active


def test_update_rejects_duplicate_url(registry):
    registry.register("alice", "https://example.com/a")
    webhook = registry.register("alice", "https://example.com/b")

    with pytest.raises(DuplicateRegistration):
        registry.update("alice", webhook.id, {"url": "https://example.com/a"})

    # Keeping its own URL is not a duplicate
    registry.update("alice", webhook.id, {"url": "https://example.com/b"})


def test_update_validates_values(registry):
    webhook = registry.register("alice", "https://example.com/hook")

    with pytest.raises(WebhookValidationError):
        registry.update("alice", webhook.id, {"metadata": {"timeout": 10}})
    with pytest.raises(WebhookValidationError):
        registry.update("alice", webhook.id, {"metadata": {"colour": "red"}})
    with pytest.raises(WebhookValidationError):
        registry.update("alice", webhook.id, {"active": "yes"})


def test_delete_removes_webhook_and_history(registry):
    webhook = registry.register("alice", "https://example.com/hook")
    registry.record_delivery(make_attempt(registry, webhook.id))

    with pytest.raises(WebhookUnauthorized):
        registry.delete("bob", webhook.id)

    registry.delete("alice", webhook.id)

    assert registry.get(webhook.id) is None
    assert webhook.id not in registry.delivery_history
    with pytest.raises(WebhookNotFound):
        registry.delete("alice", webhook.id)


def test_find_matching_and_listing(registry):
    jobs = registry.register("alice", "https://example.com/jobs", events=["job.completed"])
    everything = registry.register("alice", "https://example.com/all")
    registry.register("alice", "https://example.com/off", events=["job.completed"], active=False)
    theirs = registry.register("bob", "https://example.com/bob", events=["job.completed"])

    matching = registry.find_matching("job.completed")
    assert {w.id for w in matching} == {jobs.id, everything.id, theirs.id}

    matching = registry.find_matching("job.completed", principal_id="alice")
    assert {w.id for w in matching} == {jobs.id, everything.id}

    assert [w.id for w in registry.find_matching("user.created")] == [everything.id]

    listed = registry.list_webhooks(principal_id="alice", active=True)
    assert listed["total"] == 2

    page = registry.list_webhooks(principal_id="alice", limit=1, offset=1)
    assert page["total"] == 3
    assert len(page["webhooks"]) == 1


def test_delivery_history_is_capped(registry):
    webhook = registry.register("alice", "https://example.com/hook")

    for i in range(101):
        registry.record_delivery(make_attempt(registry, webhook.id, retry_count=i))

    history = registry.delivery_history[webhook.id]
    assert len(history) == 100
    assert history[0].retry_count == 1
    assert history[-1].retry_count == 100


def test_delivery_history_filters(registry):
    webhook = registry.register("alice", "https://example.com/hook")
    registry.record_delivery(make_attempt(registry, webhook.id, success=False))
    registry.record_delivery(make_attempt(registry, webhook.id, success=True))

    failed = registry.get_delivery_history(webhook.id, success=False)
    assert failed["total"] == 1
    assert failed["deliveries"][0].status_code == 500
    assert registry.get_delivery_history("wh_unknown")["total"] == 0


def test_prune_delivery_history(registry, clock):
    old = registry.register("alice", "https://example.com/old")
    fresh = registry.register("alice", "https://example.com/fresh")
    registry.record_delivery(make_attempt(registry, old.id))
    registry.record_delivery(make_attempt(registry, fresh.id))

    clock.advance(int(timedelta(days=6).total_seconds() * 1000))
    registry.record_delivery(make_attempt(registry, fresh.id))
    clock.advance(int(timedelta(days=2).total_seconds() * 1000))

    removed = registry.prune_delivery_history()

    assert removed == 2
    assert old.id not in registry.delivery_history
    assert len(registry.delivery_history[fresh.id]) == 1


def test_stats(registry):
    webhook = registry.register("alice", "https://example.com/hook")
    registry.register("alice", "https://example.com/off", active=False)
    registry.record_delivery(make_attempt(registry, webhook.id))

    assert registry.stats() == {"total_webhooks": 2, "active_webhooks": 1, "total_deliveries": 1}
