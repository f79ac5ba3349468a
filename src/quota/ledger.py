"""
Quota Ledger - Per-principal admission control

Every principal gets request and token budgets over three rolling windows
(minute, hour, day) plus a cap on concurrently admitted units of work.

Flow:
- ``admit`` runs before a unit of work is dispatched upstream. It reserves a
  concurrency slot and checks the six window budgets in a fixed order.
- ``record_completion`` runs once the work finishes. It releases the slot and
  charges the request and its tokens to every window.
- A background sweep resets windows as they elapse and recovers slots that were
  never released.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from src.core.clock import Clock, system_clock
from src.core.config import QuotaSettings
from src.core.scheduler import PeriodicTask
from src.models.quota import (
    CHECK_ORDER,
    AdmissionResult,
    QuotaDimension,
    QuotaLimits,
    QuotaRemaining,
    QuotaWindow,
    SoftLimit,
    SoftLimitInfo,
    UsageEvent,
    UsageRecord,
    UsageStats,
    WindowRemaining,
    counter_name,
)
from src.quota.exceptions import ConcurrencyExceeded, RateLimitExceeded
from src.quota.store import InMemoryQuotaStore

log = logging.getLogger(__name__)

LIMIT_FIELDS = {
    "requests_per_minute",
    "requests_per_hour",
    "requests_per_day",
    "tokens_per_minute",
    "tokens_per_hour",
    "tokens_per_day",
    "max_concurrent_requests",
}


class QuotaLedger:
    """Tracks budgets and usage for every principal"""

    def __init__(
        self,
        settings: Optional[QuotaSettings] = None,
        store: Optional[InMemoryQuotaStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or QuotaSettings()
        self.store = store or InMemoryQuotaStore()
        self.clock = clock or system_clock
        self._sweeper = PeriodicTask(
            "quota-window-reset",
            self.settings.sweep_interval_seconds,
            self.reset_window_counters,
        )

    async def start(self):
        """Connect the store and start the window reset sweep"""
        await self.store.connect()
        self._sweeper.start()

    async def stop(self):
        await self._sweeper.stop()
        await self.store.disconnect()

    # Records

    def _default_limits(self, principal_id: str, now: int) -> QuotaLimits:
        return QuotaLimits(
            principal_id=principal_id,
            created_at=now,
            updated_at=now,
            **self.settings.defaults.model_dump(),
        )

    def _default_usage(self, principal_id: str, now: int) -> UsageRecord:
        return UsageRecord(
            principal_id=principal_id,
            last_used=now,
            created_at=now,
            last_reset_minute=now,
            last_reset_hour=now,
            last_reset_day=now,
        )

    async def _load(self, principal_id: str, now: int) -> Tuple[QuotaLimits, UsageRecord]:
        """Fetch or lazily create both records. Caller must hold the principal lock."""
        limits = await self.store.get_limits(principal_id)
        if limits is None:
            limits = self._default_limits(principal_id, now)
            await self.store.save_limits(limits)

        usage = await self.store.get_usage(principal_id)
        if usage is None:
            usage = self._default_usage(principal_id, now)
        return limits, usage

    def _roll_windows(self, usage: UsageRecord, now: int) -> list:
        """Zero every window whose interval has elapsed since its own last reset"""
        rolled = []
        for window in QuotaWindow:
            interval = self.settings.reset_intervals[window.value]
            last_reset_attr = f"last_reset_{window.value}"
            if now - getattr(usage, last_reset_attr) >= interval:
                setattr(usage, counter_name(window, QuotaDimension.REQUESTS), 0)
                setattr(usage, counter_name(window, QuotaDimension.TOKENS), 0)
                setattr(usage, last_reset_attr, now)
                rolled.append(window.value)
        return rolled

    # Admission

    async def admit(
        self,
        principal_id: str,
        tokens_requested: int = 0,
        request_type: str = "default",
    ) -> AdmissionResult:
        """
        Check a unit of work against the principal's budget

        Raises:
            ConcurrencyExceeded: all concurrency slots are taken
            RateLimitExceeded: the first violated window/dimension
        """
        if tokens_requested < 0:
            raise ValueError("tokens_requested must be >= 0")

        async with self.store.lock(principal_id):
            now = self.clock.now_ms()
            limits, usage = await self._load(principal_id, now)
            self._roll_windows(usage, now)

            if usage.concurrent_requests >= limits.max_concurrent_requests:
                await self.store.save_usage(usage)
                log.warning(
                    "Quota check failed for %s: concurrency (%s/%s)",
                    principal_id,
                    usage.concurrent_requests,
                    limits.max_concurrent_requests,
                )
                raise ConcurrencyExceeded(principal_id, limits.max_concurrent_requests)

            # The slot is reserved before the window checks
            usage.concurrent_requests += 1
            usage.last_used = now

            try:
                self._check_windows(principal_id, usage, limits, tokens_requested)
            except RateLimitExceeded as e:
                if self.settings.release_slot_on_rejection:
                    usage.concurrent_requests = max(0, usage.concurrent_requests - 1)
                await self.store.save_usage(usage)
                log.warning(
                    "Quota check failed for %s: %s (tokens=%s, type=%s)",
                    principal_id,
                    e.reason,
                    tokens_requested,
                    request_type,
                )
                raise

            await self.store.save_usage(usage)

            soft_limit_info = self.check_soft_limits(usage, limits)
            if soft_limit_info.approaching_limit:
                log.warning(
                    "Principal %s approaching quota limit: %s",
                    principal_id,
                    ", ".join(f"{s.limit}={s.ratio}%" for s in soft_limit_info.limits),
                )

            log.debug(
                "Quota check passed for %s (tokens=%s, type=%s)",
                principal_id,
                tokens_requested,
                request_type,
            )
            return AdmissionResult(
                allowed=True,
                remaining=self.calculate_remaining(usage, limits),
                soft_limit_info=soft_limit_info,
            )

    def _check_windows(
        self,
        principal_id: str,
        usage: UsageRecord,
        limits: QuotaLimits,
        tokens_requested: int,
    ):
        for window, dimension in CHECK_ORDER:
            name = counter_name(window, dimension)
            current = getattr(usage, name)
            ceiling = getattr(limits, name)
            if dimension == QuotaDimension.REQUESTS:
                exceeded = current >= ceiling
            else:
                # Landing exactly on the ceiling is allowed
                exceeded = current + tokens_requested > ceiling
            if exceeded:
                raise RateLimitExceeded(principal_id, window, dimension, ceiling)

    async def record_completion(
        self,
        principal_id: str,
        tokens_used: int = 0,
        cost: float = 0.0,
        request_type: str = "default",
        success: bool = True,
    ) -> UsageRecord:
        """Release the concurrency slot and charge the finished work to every window"""
        async with self.store.lock(principal_id):
            now = self.clock.now_ms()
            _, usage = await self._load(principal_id, now)
            self._roll_windows(usage, now)

            usage.concurrent_requests = max(0, usage.concurrent_requests - 1)

            for window in QuotaWindow:
                requests_attr = counter_name(window, QuotaDimension.REQUESTS)
                tokens_attr = counter_name(window, QuotaDimension.TOKENS)
                setattr(usage, requests_attr, getattr(usage, requests_attr) + 1)
                setattr(usage, tokens_attr, getattr(usage, tokens_attr) + tokens_used)

            usage.total_requests += 1
            usage.total_tokens += tokens_used
            usage.total_cost += cost

            usage.history.append(
                UsageEvent(
                    timestamp=now,
                    tokens=tokens_used,
                    cost=cost,
                    request_type=request_type,
                    success=success,
                )
            )
            limit = self.settings.history_limit
            if len(usage.history) > limit:
                usage.history = usage.history[-limit:]

            usage.last_used = now
            await self.store.save_usage(usage)

        log.debug(
            "Usage recorded for %s (tokens=%s, cost=%s, type=%s, success=%s)",
            principal_id,
            tokens_used,
            cost,
            request_type,
            success,
        )
        return usage

    # Maintenance

    async def reset_window_counters(self) -> int:
        """
        Sweep every tracked principal

        Resets elapsed windows and clears concurrency counts that have not
        moved for longer than ``stale_concurrency_ms``.

        Returns:
            Number of principals that had something reset
        """
        touched = 0
        for principal_id in await self.store.principal_ids():
            async with self.store.lock(principal_id):
                usage = await self.store.get_usage(principal_id)
                if usage is None:
                    continue
                now = self.clock.now_ms()
                changed = bool(self._roll_windows(usage, now))

                if (
                    usage.concurrent_requests > 0
                    and now - usage.last_used > self.settings.stale_concurrency_ms
                ):
                    log.warning(
                        "Recovering %s stuck concurrency slot(s) for %s",
                        usage.concurrent_requests,
                        principal_id,
                    )
                    usage.concurrent_requests = 0
                    changed = True

                if changed:
                    await self.store.save_usage(usage)
                    touched += 1

        log.debug("Usage counters reset completed (%s principals)", touched)
        return touched

    async def reset_principal(self, principal_id: str) -> Dict[str, Any]:
        """Zero rolling counters and concurrency; lifetime totals and history are kept"""
        async with self.store.lock(principal_id):
            now = self.clock.now_ms()
            _, usage = await self._load(principal_id, now)
            for window in QuotaWindow:
                setattr(usage, counter_name(window, QuotaDimension.REQUESTS), 0)
                setattr(usage, counter_name(window, QuotaDimension.TOKENS), 0)
                setattr(usage, f"last_reset_{window.value}", now)
            usage.concurrent_requests = 0
            await self.store.save_usage(usage)

        log.info("Quota reset for %s", principal_id)
        return await self.get_quota_info(principal_id)

    async def set_quota(self, principal_id: str, **updates) -> QuotaLimits:
        """Change a principal's budget (admin path)"""
        unknown = set(updates) - LIMIT_FIELDS
        if unknown:
            raise ValueError(f"Unknown quota fields: {', '.join(sorted(unknown))}")

        async with self.store.lock(principal_id):
            now = self.clock.now_ms()
            current, _ = await self._load(principal_id, now)
            merged = current.model_dump()
            merged.update({k: v for k, v in updates.items() if v is not None})
            merged["updated_at"] = now
            limits = QuotaLimits.model_validate(merged)
            await self.store.save_limits(limits)

        log.info("Quota updated for %s: %s", principal_id, updates)
        return limits

    async def cleanup_old_usage(self, max_age_days: float = 30) -> int:
        """Drop old history entries and principals idle for longer than ``max_age_days``"""
        cutoff = self.clock.now_ms() - int(max_age_days * 24 * 60 * 60 * 1000)
        cleaned = 0

        for principal_id in await self.store.principal_ids():
            async with self.store.lock(principal_id):
                usage = await self.store.get_usage(principal_id)
                if usage is None:
                    continue

                old_length = len(usage.history)
                usage.history = [h for h in usage.history if h.timestamp > cutoff]
                cleaned += old_length - len(usage.history)

                if (
                    usage.last_used < cutoff
                    and not usage.history
                    and usage.concurrent_requests == 0
                ):
                    await self.store.delete_usage(principal_id)
                    limits = await self.store.get_limits(principal_id)
                    # Budgets changed by an admin survive cleanup
                    if limits and limits.updated_at == limits.created_at:
                        await self.store.delete_limits(principal_id)
                    cleaned += 1
                elif len(usage.history) != old_length:
                    await self.store.save_usage(usage)

        log.info("Usage data cleanup completed: %s entries removed (max age %s days)", cleaned, max_age_days)
        return cleaned

    # Reporting

    def check_soft_limits(self, usage: UsageRecord, limits: QuotaLimits) -> SoftLimitInfo:
        """Advisory flags for dimensions at or above the soft-limit threshold"""
        threshold = self.settings.soft_limit_threshold
        ratios = {}
        for window, dimension in CHECK_ORDER:
            name = counter_name(window, dimension)
            ratios[name] = getattr(usage, name) / getattr(limits, name)

        if not self.settings.enable_soft_limits:
            return SoftLimitInfo(current_usage=ratios)

        flagged = [
            SoftLimit(limit=name, ratio=round(ratio * 100), threshold=round(threshold * 100))
            for name, ratio in ratios.items()
            if ratio >= threshold
        ]
        return SoftLimitInfo(
            approaching_limit=bool(flagged),
            limits=flagged,
            current_usage=ratios,
        )

    def calculate_remaining(self, usage: UsageRecord, limits: QuotaLimits) -> QuotaRemaining:
        def remaining(dimension: QuotaDimension) -> WindowRemaining:
            values = {}
            for window in QuotaWindow:
                name = counter_name(window, dimension)
                values[f"per_{window.value}"] = max(0, getattr(limits, name) - getattr(usage, name))
            return WindowRemaining(**values)

        return QuotaRemaining(
            requests=remaining(QuotaDimension.REQUESTS),
            tokens=remaining(QuotaDimension.TOKENS),
            concurrent_requests=max(0, limits.max_concurrent_requests - usage.concurrent_requests),
        )

    async def get_quota_info(self, principal_id: str) -> Dict[str, Any]:
        """Budget, current usage and remaining allowance for one principal"""
        async with self.store.lock(principal_id):
            now = self.clock.now_ms()
            limits, usage = await self._load(principal_id, now)
            if self._roll_windows(usage, now):
                await self.store.save_usage(usage)

        return {
            "principal_id": principal_id,
            "quota": limits.model_dump(),
            "usage": {
                "requests": {
                    "per_minute": usage.requests_per_minute,
                    "per_hour": usage.requests_per_hour,
                    "per_day": usage.requests_per_day,
                    "total": usage.total_requests,
                },
                "tokens": {
                    "per_minute": usage.tokens_per_minute,
                    "per_hour": usage.tokens_per_hour,
                    "per_day": usage.tokens_per_day,
                    "total": usage.total_tokens,
                },
                "cost": usage.total_cost,
                "concurrent_requests": usage.concurrent_requests,
                "last_used": usage.last_used,
            },
            "remaining": self.calculate_remaining(usage, limits).model_dump(),
            "soft_limit_info": self.check_soft_limits(usage, limits).model_dump(),
            "reset_intervals": dict(self.settings.reset_intervals),
        }

    async def get_usage_stats(
        self,
        principal_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        """Aggregate the principal's usage history, optionally within [start, end]"""
        usage = await self.store.get_usage(principal_id)
        history = list(usage.history) if usage else []

        if start:
            start_ms = int(start.timestamp() * 1000)
            history = [h for h in history if h.timestamp >= start_ms]
        if end:
            end_ms = int(end.timestamp() * 1000)
            history = [h for h in history if h.timestamp <= end_ms]

        stats = UsageStats(principal_id=principal_id)
        if start:
            stats.period_start = start.isoformat()
        elif history:
            stats.period_start = _to_datetime(history[0].timestamp).isoformat()
        stats.period_end = (end or self.clock.now()).isoformat()

        for entry in history:
            stats.total_requests += 1
            if entry.success:
                stats.successful_requests += 1
            else:
                stats.failed_requests += 1
            stats.total_tokens += entry.tokens
            stats.total_cost += entry.cost

            moment = _to_datetime(entry.timestamp)
            stats.request_types[entry.request_type] = stats.request_types.get(entry.request_type, 0) + 1
            stats.hourly_distribution[moment.hour] = stats.hourly_distribution.get(moment.hour, 0) + 1
            day = moment.date().isoformat()
            stats.daily_distribution[day] = stats.daily_distribution.get(day, 0) + 1

        if history:
            stats.average_tokens_per_request = stats.total_tokens / len(history)
            stats.average_cost_per_request = stats.total_cost / len(history)
        return stats

    async def health_check(self) -> Dict[str, Any]:
        principal_ids = await self.store.principal_ids()
        now = self.clock.now_ms()
        total_requests = 0
        active = 0
        for principal_id in principal_ids:
            usage = await self.store.get_usage(principal_id)
            if usage is None:
                continue
            total_requests += usage.total_requests
            if now - usage.last_used < self.settings.stale_concurrency_ms:
                active += 1

        return {
            "status": "healthy",
            "timestamp": self.clock.isoformat(),
            "total_principals": len(principal_ids),
            "total_requests": total_requests,
            "active_principals": active,
            "sweeper_running": self._sweeper.running,
        }


def _to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
