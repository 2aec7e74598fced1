"""
Кеширование привязок водителей с использованием Redis для поддержки нескольких инстансов.

Кешируется CachedDriver (dataclass), а НЕ ORM-объект DriverAccount, чтобы
избежать DetachedInstanceError при обращении к нему вне сессии.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import asyncio
import json
import logging
from datetime import datetime, timedelta

from config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CachedDriver:
    """Легковесный снимок привязки водителя для кеша (не ORM-объект)."""
    telegram_id: int
    driver_id: str
    full_name: str
    api_token: Optional[str]
    is_active: bool

    def to_dict(self) -> dict:
        return {
            "telegram_id": self.telegram_id,
            "driver_id": self.driver_id,
            "full_name": self.full_name,
            "api_token": self.api_token,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CachedDriver:
        return cls(
            telegram_id=d["telegram_id"],
            driver_id=d["driver_id"],
            full_name=d["full_name"],
            api_token=d.get("api_token"),
            is_active=d["is_active"],
        )

    @classmethod
    def from_orm(cls, account) -> CachedDriver:
        """Создать из SQLAlchemy DriverAccount."""
        return cls(
            telegram_id=account.telegram_id,
            driver_id=account.driver_id,
            full_name=account.full_name,
            api_token=account.api_token,
            is_active=account.is_active,
        )


class RedisDriverCache:
    """Кеш водителей на Redis с TTL."""

    def __init__(self, redis_client, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl = ttl_seconds
        self._prefix = "driver_cache:"

    def _key(self, telegram_id: int) -> str:
        return f"{self._prefix}{telegram_id}"

    async def get(self, telegram_id: int) -> Optional[CachedDriver]:
        try:
            data = await self.redis.get(self._key(telegram_id))
            if data:
                return CachedDriver.from_dict(json.loads(data))
        except Exception as e:
            logger.debug("Cache get error for driver %s: %s", telegram_id, e)
        return None

    async def set(self, telegram_id: int, driver) -> None:
        """Сохранить водителя в кеш (принимает ORM DriverAccount или CachedDriver)."""
        try:
            cached = driver if isinstance(driver, CachedDriver) else CachedDriver.from_orm(driver)
            await self.redis.setex(self._key(telegram_id), self.ttl, json.dumps(cached.to_dict()))
        except Exception as e:
            logger.warning("Cache set error for driver %s: %s", telegram_id, e)

    async def invalidate(self, telegram_id: int) -> None:
        try:
            await self.redis.delete(self._key(telegram_id))
        except Exception as e:
            logger.debug("Cache invalidate error for driver %s: %s", telegram_id, e)


class MemoryDriverCache:
    """In-memory кеш водителей (fallback если Redis недоступен)."""

    def __init__(self, ttl_seconds: int = 300):
        self._cache: dict[int, tuple[CachedDriver, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._lock = asyncio.Lock()

    async def get(self, telegram_id: int) -> Optional[CachedDriver]:
        async with self._lock:
            if telegram_id in self._cache:
                cached, expiry = self._cache[telegram_id]
                if datetime.now() < expiry:
                    return cached
                del self._cache[telegram_id]
        return None

    async def set(self, telegram_id: int, driver) -> None:
        async with self._lock:
            cached = driver if isinstance(driver, CachedDriver) else CachedDriver.from_orm(driver)
            self._cache[telegram_id] = (cached, datetime.now() + self._ttl)

    async def invalidate(self, telegram_id: int) -> None:
        async with self._lock:
            self._cache.pop(telegram_id, None)


# Глобальный экземпляр кеша (инициализируется в main.py)
driver_cache: Optional[RedisDriverCache | MemoryDriverCache] = None


async def init_cache(redis_client=None) -> RedisDriverCache | MemoryDriverCache:
    """Инициализировать кеш водителей."""
    global driver_cache
    if redis_client:
        try:
            await redis_client.ping()
            driver_cache = RedisDriverCache(redis_client, ttl_seconds=config.REDIS_CACHE_TTL)
            logger.info("Using Redis cache for drivers")
            return driver_cache
        except Exception as e:
            logger.warning("Redis not available for cache, using memory: %s", e)

    driver_cache = MemoryDriverCache(ttl_seconds=config.REDIS_CACHE_TTL)
    logger.info("Using memory cache for drivers")
    return driver_cache
