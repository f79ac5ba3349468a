"""Tests for the quota ledger"""

import asyncio

import pytest

from src.core.config import QuotaSettings
from src.models.quota import QuotaDimension, QuotaWindow
from src.quota.exceptions import ConcurrencyExceeded, RateLimitExceeded
from src.quota.ledger import QuotaLedger
from src.quota.store import InMemoryQuotaStore

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


def make_ledger(clock, **settings):
    return QuotaLedger(QuotaSettings(**settings), clock=clock)


@pytest.mark.asyncio
async def test_nth_request_admitted_and_next_rejected_within_minute(clock):
    """The request after the per-minute ceiling is rejected on the minute window"""
    ledger = make_ledger(clock)
    ceiling = ledger.settings.defaults.requests_per_minute

    for _ in range(ceiling):
        result = await ledger.admit("alice")
        assert result.allowed
        await ledger.record_completion("alice")

    with pytest.raises(RateLimitExceeded) as exc_info:
        await ledger.admit("alice")

    assert exc_info.value.window == QuotaWindow.MINUTE
    assert exc_info.value.dimension == QuotaDimension.REQUESTS


@pytest.mark.asyncio
async def test_token_ceiling_can_be_reached_exactly(clock):
    ledger = make_ledger(clock)
    await ledger.set_quota("alice", tokens_per_minute=1000)

    await ledger.admit("alice", tokens_requested=600)
    await ledger.record_completion("alice", tokens_used=600)

    # 600 + 400 lands exactly on the ceiling
    result = await ledger.admit("alice", tokens_requested=400)
    assert result.allowed
    assert result.remaining.tokens.per_minute == 400

    with pytest.raises(RateLimitExceeded) as exc_info:
        await ledger.admit("alice", tokens_requested=401)
    assert exc_info.value.window == QuotaWindow.MINUTE
    assert exc_info.value.dimension == QuotaDimension.TOKENS
    assert exc_info.value.reason == "tokens_per_minute"


@pytest.mark.asyncio
async def test_concurrency_cap_and_release(clock):
    ledger = make_ledger(clock)
    cap = ledger.settings.defaults.max_concurrent_requests

    for _ in range(cap):
        await ledger.admit("alice")

    with pytest.raises(ConcurrencyExceeded):
        await ledger.admit("alice")

    await ledger.record_completion("alice")
    result = await ledger.admit("alice")
    assert result.allowed
    assert result.remaining.concurrent_requests == 0


@pytest.mark.asyncio
async def test_window_counters_reset_independently(clock):
    ledger = make_ledger(clock)
    for _ in range(3):
        await ledger.admit("alice", tokens_requested=10)
        await ledger.record_completion("alice", tokens_used=10)

    clock.advance(61 * 1000)
    await ledger.reset_window_counters()

    usage = await ledger.store.get_usage("alice")
    assert usage.requests_per_minute == 0
    assert usage.tokens_per_minute == 0
    assert usage.requests_per_hour == 3
    assert usage.tokens_per_hour == 30
    assert usage.requests_per_day == 3
    assert usage.tokens_per_day == 30

    clock.advance(HOUR_MS)
    await ledger.reset_window_counters()

    usage = await ledger.store.get_usage("alice")
    assert usage.requests_per_hour == 0
    assert usage.tokens_per_hour == 0
    assert usage.requests_per_day == 3
    assert usage.total_requests == 3


@pytest.mark.asyncio
async def test_minute_exhaustion_does_not_touch_hour_budget(clock):
    ledger = make_ledger(clock)
    await ledger.set_quota("alice", requests_per_minute=2, requests_per_hour=5)

    for _ in range(2):
        await ledger.admit("alice")
        await ledger.record_completion("alice")
    with pytest.raises(RateLimitExceeded):
        await ledger.admit("alice")

    usage = await ledger.store.get_usage("alice")
    assert usage.requests_per_hour == 2


@pytest.mark.asyncio
async def test_history_keeps_last_thousand_events(clock):
    ledger = make_ledger(clock)

    for i in range(1001):
        await ledger.record_completion("alice", tokens_used=i)

    usage = await ledger.store.get_usage("alice")
    assert len(usage.history) == 1000
    assert usage.history[0].tokens == 1
    assert usage.history[-1].tokens == 1000
    assert usage.total_requests == 1001


@pytest.mark.asyncio
async def test_minute_budget_recovers_after_sweep(clock):
    """Two admissions fit, the third is rejected, and the sweep restores the budget"""
    ledger = make_ledger(clock)
    await ledger.set_quota("p", requests_per_minute=2, tokens_per_minute=1000)

    for _ in range(2):
        result = await ledger.admit("p", tokens_requested=500)
        assert result.allowed
        await ledger.record_completion("p", tokens_used=500)

    with pytest.raises(RateLimitExceeded) as exc_info:
        await ledger.admit("p", tokens_requested=500)
    assert exc_info.value.window == QuotaWindow.MINUTE
    assert exc_info.value.dimension == QuotaDimension.REQUESTS

    clock.advance(61 * 1000)
    await ledger.reset_window_counters()

    result = await ledger.admit("p", tokens_requested=500)
    assert result.allowed


@pytest.mark.asyncio
async def test_elapsed_window_rolls_over_at_admission(clock):
    ledger = make_ledger(clock)
    await ledger.set_quota("alice", requests_per_minute=1)
    await ledger.admit("alice")
    await ledger.record_completion("alice")

    clock.advance(MINUTE_MS)

    assert (await ledger.admit("alice")).allowed


@pytest.mark.asyncio
async def test_rate_rejection_keeps_concurrency_slot_by_default(clock):
    ledger = make_ledger(clock)
    await ledger.set_quota("alice", requests_per_minute=1)
    await ledger.admit("alice")
    await ledger.record_completion("alice")

    with pytest.raises(RateLimitExceeded):
        await ledger.admit("alice")

    usage = await ledger.store.get_usage("alice")
    assert usage.concurrent_requests == 1


@pytest.mark.asyncio
async def test_rate_rejection_can_release_slot(clock):
    ledger = make_ledger(clock, release_slot_on_rejection=True)
    await ledger.set_quota("alice", requests_per_minute=1)
    await ledger.admit("alice")
    await ledger.record_completion("alice")

    with pytest.raises(RateLimitExceeded):
        await ledger.admit("alice")

    usage = await ledger.store.get_usage("alice")
    assert usage.concurrent_requests == 0


@pytest.mark.asyncio
async def test_sweep_recovers_stuck_concurrency(clock):
    ledger = make_ledger(clock)
    await ledger.admit("alice")
    await ledger.admit("alice")

    clock.advance(30 * 1000)
    await ledger.reset_window_counters()
    assert (await ledger.store.get_usage("alice")).concurrent_requests == 2

    clock.advance(31 * 1000)
    await ledger.reset_window_counters()
    assert (await ledger.store.get_usage("alice")).concurrent_requests == 0


@pytest.mark.asyncio
async def test_completion_without_admission_is_accounted(clock):
    ledger = make_ledger(clock)

    usage = await ledger.record_completion("bob", tokens_used=42, cost=0.5, success=False)

    assert usage.concurrent_requests == 0
    assert usage.requests_per_minute == 1
    assert usage.tokens_per_day == 42
    assert usage.total_cost == 0.5
    assert usage.history[-1].success is False


@pytest.mark.asyncio
async def test_reset_principal_keeps_lifetime_totals(clock):
    ledger = make_ledger(clock)
    await ledger.admit("alice", tokens_requested=100)
    await ledger.record_completion("alice", tokens_used=100, cost=1.25)
    await ledger.admit("alice")

    info = await ledger.reset_principal("alice")

    assert info["usage"]["requests"]["per_minute"] == 0
    assert info["usage"]["tokens"]["per_day"] == 0
    assert info["usage"]["concurrent_requests"] == 0
    assert info["usage"]["requests"]["total"] == 1
    assert info["usage"]["tokens"]["total"] == 100
    assert info["usage"]["cost"] == 1.25
    assert len((await ledger.store.get_usage("alice")).history) == 1


@pytest.mark.asyncio
async def test_soft_limit_is_advisory(clock):
    ledger = make_ledger(clock)
    await ledger.set_quota("alice", requests_per_minute=10)
    for _ in range(8):
        await ledger.admit("alice")
        await ledger.record_completion("alice")

    result = await ledger.admit("alice")

    assert result.allowed
    assert result.soft_limit_info.approaching_limit
    flagged = {s.limit: s for s in result.soft_limit_info.limits}
    assert flagged["requests_per_minute"].ratio == 80
    assert flagged["requests_per_minute"].threshold == 80


@pytest.mark.asyncio
async def test_negative_token_request_is_rejected(clock):
    ledger = make_ledger(clock)
    with pytest.raises(ValueError):
        await ledger.admit("alice", tokens_requested=-1)


@pytest.mark.asyncio
async def test_set_quota_validates_fields(clock):
    ledger = make_ledger(clock)
    with pytest.raises(ValueError):
        await ledger.set_quota("alice", requests_per_week=5)
    with pytest.raises(ValueError):
        await ledger.set_quota("alice", requests_per_minute=0)

    limits = await ledger.set_quota("alice", max_concurrent_requests=2)
    assert limits.max_concurrent_requests == 2
    assert limits.requests_per_minute == 60


@pytest.mark.asyncio
async def test_usage_stats(clock):
    ledger = make_ledger(clock)
    await ledger.record_completion("alice", tokens_used=100, cost=0.1, request_type="chat")
    await ledger.record_completion("alice", tokens_used=300, cost=0.3, request_type="video", success=False)

    stats = await ledger.get_usage_stats("alice")

    assert stats.total_requests == 2
    assert stats.successful_requests == 1
    assert stats.failed_requests == 1
    assert stats.total_tokens == 400
    assert stats.average_tokens_per_request == 200
    assert stats.request_types == {"chat": 1, "video": 1}
    assert sum(stats.daily_distribution.values()) == 2


@pytest.mark.asyncio
async def test_cleanup_removes_idle_principals(clock):
    ledger = make_ledger(clock)
    await ledger.record_completion("idle")
    await ledger.record_completion("custom")
    clock.advance(1000)
    await ledger.set_quota("custom", requests_per_minute=5)

    clock.advance(31 * 24 * HOUR_MS)
    await ledger.record_completion("busy")

    cleaned = await ledger.cleanup_old_usage(max_age_days=30)

    assert cleaned == 4
    assert await ledger.store.principal_ids() == ["busy"]
    assert await ledger.store.get_limits("idle") is None
    assert (await ledger.store.get_limits("custom")).requests_per_minute == 5
    assert set(ledger.store._locks) == {"busy"}


@pytest.mark.asyncio
async def test_start_and_stop_manage_sweeper(clock):
    ledger = make_ledger(clock)
    await ledger.start()
    health = await ledger.health_check()
    assert health["sweeper_running"] is True

    await ledger.stop()
    health = await ledger.health_check()
    assert health["sweeper_running"] is False


class YieldingStore(InMemoryQuotaStore):
    """Hands out copies and yields to the loop on every read"""

    async def get_usage(self, principal_id):
        await asyncio.sleep(0)
        usage = await super().get_usage(principal_id)
        return usage.model_copy(deep=True) if usage else None

    async def save_usage(self, usage):
        await asyncio.sleep(0)
        await super().save_usage(usage.model_copy(deep=True))


@pytest.mark.asyncio
async def test_concurrent_admissions_respect_concurrency_cap(clock):
    ledger = QuotaLedger(QuotaSettings(), YieldingStore(), clock)
    cap = ledger.settings.defaults.max_concurrent_requests

    results = await asyncio.gather(
        *(ledger.admit("alice") for _ in range(20)),
        return_exceptions=True,
    )

    admitted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, ConcurrencyExceeded)]
    assert len(admitted) == cap
    assert len(rejected) == 20 - cap
    assert (await ledger.store.get_usage("alice")).concurrent_requests == cap


@pytest.mark.asyncio
async def test_concurrent_completions_are_all_counted(clock):
    ledger = QuotaLedger(QuotaSettings(), YieldingStore(), clock)

    await asyncio.gather(*(ledger.record_completion("alice", tokens_used=3) for _ in range(20)))

    usage = await ledger.store.get_usage("alice")
    assert usage.total_requests == 20
    assert usage.tokens_per_minute == 60
