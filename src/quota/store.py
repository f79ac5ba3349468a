"""
Quota storage backends

The ledger only talks to a ``QuotaStore``: per-principal get/save of limits and
usage plus a per-principal lock that guards every read-modify-write. The
in-process store keeps everything in dicts; the Redis store keeps JSON documents
in Redis and uses Redis locks so several gateway processes can share budgets.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional
import redis.asyncio as redis
from redis.asyncio import Redis

from src.models.quota import QuotaLimits, UsageRecord

log = logging.getLogger(__name__)


class InMemoryQuotaStore:
    """Process-local quota storage"""

    def __init__(self):
        self.limits: Dict[str, QuotaLimits] = {}
        self.usage: Dict[str, UsageRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    @asynccontextmanager
    async def lock(self, principal_id: str) -> AsyncIterator[None]:
        """Per-principal mutex; dropped once no one holds or awaits it and the principal is gone"""
        lock = self._locks.setdefault(principal_id, asyncio.Lock())
        self._lock_users[principal_id] = self._lock_users.get(principal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[principal_id] -= 1
            if not self._lock_users[principal_id] and principal_id not in self.usage:
                del self._lock_users[principal_id]
                del self._locks[principal_id]

    async def get_limits(self, principal_id: str) -> Optional[QuotaLimits]:
        return self.limits.get(principal_id)

    async def save_limits(self, limits: QuotaLimits):
        self.limits[limits.principal_id] = limits

    async def delete_limits(self, principal_id: str):
        self.limits.pop(principal_id, None)

    async def get_usage(self, principal_id: str) -> Optional[UsageRecord]:
        return self.usage.get(principal_id)

    async def save_usage(self, usage: UsageRecord):
        self.usage[usage.principal_id] = usage

    async def delete_usage(self, principal_id: str):
        self.usage.pop(principal_id, None)

    async def principal_ids(self) -> List[str]:
        return list(self.usage.keys())

    async def health_check(self) -> bool:
        return True


class RedisQuotaStore(InMemoryQuotaStore):
    """
    Redis-backed quota storage

    Records are stored as JSON under ``quota:limits:<id>`` and
    ``quota:usage:<id>``; known principals are tracked in the
    ``quota:principals`` set. If Redis is unreachable at connect time the store
    logs a warning and behaves like the in-process store.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 3,
        password: Optional[str] = None,
        lock_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.lock_timeout = lock_timeout
        self.client: Optional[Redis] = client

    async def connect(self):
        """Connect to Redis"""
        if self.client:
            return
        try:
            self.client = await redis.from_url(
                f"redis://{self.host}:{self.port}/{self.db}",
                password=self.password,
                decode_responses=True,
            )
            await self.client.ping()
        except Exception as e:
            log.warning(
                "Redis connection failed: %s. Falling back to in-process quota storage.", e
            )
            self.client = None

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.client:
            await self.client.aclose()
            self.client = None

    @asynccontextmanager
    async def lock(self, principal_id: str) -> AsyncIterator[None]:
        if not self.client:
            async with super().lock(principal_id):
                yield
            return
        async with self.client.lock(
            f"quota:lock:{principal_id}",
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        ):
            yield

    async def get_limits(self, principal_id: str) -> Optional[QuotaLimits]:
        if not self.client:
            return await super().get_limits(principal_id)
        data = await self.client.get(f"quota:limits:{principal_id}")
        if data:
            return QuotaLimits.model_validate_json(data)
        return None

    async def save_limits(self, limits: QuotaLimits):
        if not self.client:
            return await super().save_limits(limits)
        await self.client.set(f"quota:limits:{limits.principal_id}", limits.model_dump_json())

    async def delete_limits(self, principal_id: str):
        if not self.client:
            return await super().delete_limits(principal_id)
        await self.client.delete(f"quota:limits:{principal_id}")

    async def get_usage(self, principal_id: str) -> Optional[UsageRecord]:
        if not self.client:
            return await super().get_usage(principal_id)
        data = await self.client.get(f"quota:usage:{principal_id}")
        if data:
            return UsageRecord.model_validate_json(data)
        return None

    async def save_usage(self, usage: UsageRecord):
        if not self.client:
            return await super().save_usage(usage)
        await self.client.set(f"quota:usage:{usage.principal_id}", usage.model_dump_json())
        await self.client.sadd("quota:principals", usage.principal_id)

    async def delete_usage(self, principal_id: str):
        if not self.client:
            return await super().delete_usage(principal_id)
        await self.client.delete(f"quota:usage:{principal_id}")
        await self.client.srem("quota:principals", principal_id)

    async def principal_ids(self) -> List[str]:
        if not self.client:
            return await super().principal_ids()
        return sorted(await self.client.smembers("quota:principals"))

    async def health_check(self) -> bool:
        if not self.client:
            return False
        try:
            await self.client.ping()
            return True
        except Exception:
            return False


def create_store(settings) -> InMemoryQuotaStore:
    """Build the store named by ``QuotaSettings.store``"""
    if settings.store == "redis":
        return RedisQuotaStore(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
        )
    return InMemoryQuotaStore()
