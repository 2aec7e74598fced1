import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.core import Base
from database.models import DriverAccount
from services import cache, db_ops
from services.cache import CachedDriver, MemoryDriverCache, init_cache


@pytest.fixture
async def session():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def memory_cache(monkeypatch):
    driver_cache = MemoryDriverCache(ttl_seconds=60)
    monkeypatch.setattr(cache, "driver_cache", driver_cache)
    return driver_cache


async def test_link_creates_and_relinks(session, memory_cache):
    account = await db_ops.link_driver(session, 100, "driver_a", "Alice", api_token="tok")
    assert account.id is not None
    assert account.is_active

    relinked = await db_ops.link_driver(session, 100, "driver_b", "")
    assert relinked.id == account.id
    assert relinked.driver_id == "driver_b"
    assert relinked.full_name == "Alice"
    assert relinked.api_token is None


async def test_cached_driver_reads_through_cache(session, memory_cache):
    assert await db_ops.get_cached_driver(session, 100) is None

    await db_ops.link_driver(session, 100, "driver_a", "Alice")
    cached = await db_ops.get_cached_driver(session, 100)
    assert cached == CachedDriver(100, "driver_a", "Alice", None, True)
    assert await memory_cache.get(100) == cached

    await db_ops.link_driver(session, 100, "driver_b", "Alice")
    assert await memory_cache.get(100) is None
    assert (await db_ops.get_cached_driver(session, 100)).driver_id == "driver_b"


async def test_unlink_deactivates(session, memory_cache):
    assert not await db_ops.unlink_driver(session, 100)

    await db_ops.link_driver(session, 100, "driver_a", "Alice")
    await db_ops.get_cached_driver(session, 100)
    assert await db_ops.unlink_driver(session, 100)
    assert not await db_ops.unlink_driver(session, 100)

    assert await memory_cache.get(100) is None
    assert not (await db_ops.get_cached_driver(session, 100)).is_active


async def test_list_and_touch(session, memory_cache):
    await db_ops.link_driver(session, 2, "driver_b", "Bob")
    await db_ops.link_driver(session, 1, "driver_a", "Alice")
    await db_ops.link_driver(session, 3, "driver_c", "Carol")
    await db_ops.unlink_driver(session, 3)

    active = await db_ops.list_driver_accounts(session)
    assert [a.full_name for a in active] == ["Alice", "Bob"]
    assert len(await db_ops.list_driver_accounts(session, active_only=False)) == 3

    await db_ops.touch_driver_location(session, 1)
    account = await db_ops.get_driver_account(session, 1)
    await session.refresh(account)
    assert account.last_location_at is not None


async def test_works_without_cache(session, monkeypatch):
    monkeypatch.setattr(cache, "driver_cache", None)
    await db_ops.link_driver(session, 5, "driver_e", "Eve")
    assert (await db_ops.get_cached_driver(session, 5)).driver_id == "driver_e"


async def test_init_cache_falls_back_to_memory(monkeypatch):
    class DeadRedis:
        async def ping(self):
            raise ConnectionError("redis is down")

    monkeypatch.setattr(cache, "driver_cache", None)
    assert isinstance(await init_cache(DeadRedis()), MemoryDriverCache)
    assert isinstance(cache.driver_cache, MemoryDriverCache)


async def test_memory_cache_expires():
    driver_cache = MemoryDriverCache(ttl_seconds=0)
    account = DriverAccount(telegram_id=9, driver_id="driver_z", full_name="Zed", api_token=None, is_active=True)
    await driver_cache.set(9, account)
    assert await driver_cache.get(9) is None
