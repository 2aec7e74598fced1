from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import DriverAccount
from services import cache
from services.cache import CachedDriver


async def get_driver_account(session: AsyncSession, telegram_id: int) -> DriverAccount | None:
    stmt = select(DriverAccount).where(DriverAccount.telegram_id == telegram_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_cached_driver(session: AsyncSession, telegram_id: int) -> Optional[CachedDriver]:
    """
    Привязка водителя для проверки доступа.
    Сначала кеш, затем БД; найденная в БД запись кладётся в кеш.
    """
    if cache.driver_cache is not None:
        cached = await cache.driver_cache.get(telegram_id)
        if cached is not None:
            return cached

    account = await get_driver_account(session, telegram_id)
    if account is None:
        return None

    cached = CachedDriver.from_orm(account)
    if cache.driver_cache is not None:
        await cache.driver_cache.set(telegram_id, cached)
    return cached


async def link_driver(
    session: AsyncSession,
    telegram_id: int,
    driver_id: str,
    full_name: str,
    api_token: Optional[str] = None,
) -> DriverAccount:
    """
    Привязать Telegram-пользователя к водителю Fleetbase.
    Повторная привязка перезаписывает driver_id и токен и активирует запись.
    """
    account = await get_driver_account(session, telegram_id)
    if account is None:
        account = DriverAccount(telegram_id=telegram_id, driver_id=driver_id, full_name=full_name)
        session.add(account)
    else:
        account.driver_id = driver_id
        account.full_name = full_name or account.full_name
    account.api_token = api_token
    account.is_active = True

    await session.commit()
    await session.refresh(account)

    if cache.driver_cache is not None:
        await cache.driver_cache.invalidate(telegram_id)
    return account


async def unlink_driver(session: AsyncSession, telegram_id: int) -> bool:
    """Деактивировать привязку. Возвращает False, если привязки не было."""
    account = await get_driver_account(session, telegram_id)
    if account is None or not account.is_active:
        return False
    account.is_active = False
    await session.commit()

    if cache.driver_cache is not None:
        await cache.driver_cache.invalidate(telegram_id)
    return True


async def touch_driver_location(session: AsyncSession, telegram_id: int) -> None:
    """Отметить время последней отправленной геопозиции."""
    stmt = (
        update(DriverAccount)
        .where(DriverAccount.telegram_id == telegram_id)
        .values(last_location_at=datetime.now(timezone.utc))
    )
    await session.execute(stmt)
    await session.commit()


async def list_driver_accounts(session: AsyncSession, active_only: bool = True) -> list[DriverAccount]:
    stmt = select(DriverAccount).order_by(DriverAccount.full_name)
    if active_only:
        stmt = stmt.where(DriverAccount.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())
