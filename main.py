import asyncio
import logging
import sys
import os
import time
from pathlib import Path
from logging.handlers import RotatingFileHandler
from aiogram import Bot, Dispatcher
from aiogram.exceptions import TelegramAPIError, TelegramNetworkError, TelegramServerError, TelegramRetryAfter
from aiogram.types import ErrorEvent
from config import config
from middlewares.db_middleware import DatabaseMiddleware
from middlewares.logging_middleware import LoggingMiddleware

# Configure logging with rotating file handler
log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format=log_format,
    handlers=[
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            'bot.log',
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
    ]
)

logger = logging.getLogger(__name__)


_lock_handle = None


def acquire_single_instance_lock() -> None:
    """
    Локальная защита от запуска двух экземпляров бота на одной машине.
    Иначе Telegram ответит TelegramConflictError.
    """
    global _lock_handle
    lock_path = Path(__file__).resolve().parent / ".bot.lock"
    f = open(lock_path, "a+", encoding="utf-8")
    try:
        if os.name == "nt":
            import msvcrt  # type: ignore
            msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl  # type: ignore
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        f.close()
        raise RuntimeError(
            "Похоже, бот уже запущен на этой машине (занят .bot.lock). "
            "Остановите другие экземпляры, иначе будет TelegramConflictError."
        )
    _lock_handle = f


def setup_asyncio_exception_logging() -> None:
    """
    Ловит исключения из фоновых задач asyncio (подписки, перезагрузки заказов),
    которые не проходят через aiogram handlers/errors.
    """
    loop = asyncio.get_running_loop()

    def _handler(loop: asyncio.AbstractEventLoop, context: dict):
        msg = context.get("message", "asyncio exception")
        exc = context.get("exception")
        logger.error("ASYNCIO %s", msg, exc_info=exc)

    loop.set_exception_handler(_handler)


async def wait_for_db() -> None:
    """
    Ждём БД при старте (PostgreSQL может ещё подниматься).

    Управляется env:
    - DB_WAIT_SECONDS (по умолчанию 60)
    - DB_RETRY_MAX_DELAY (по умолчанию 10)
    """
    max_wait = int(os.getenv("DB_WAIT_SECONDS", "60"))
    max_delay = float(os.getenv("DB_RETRY_MAX_DELAY", "10"))

    from database.core import engine
    from sqlalchemy.exc import SQLAlchemyError
    from sqlalchemy import text

    deadline = time.monotonic() + max_wait
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("✅ Database connection successful")
            return
        except (SQLAlchemyError, ConnectionRefusedError, OSError) as e:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("❌ Database is not reachable: %r", e, exc_info=True)
                logger.error(
                    "Check DB settings: DB_DIALECT=%s DB_HOST=%s DB_PORT=%s DB_NAME=%s DB_USER=%s",
                    config.DB_DIALECT, config.DB_HOST, config.DB_PORT, config.DB_NAME, config.DB_USER,
                )
                raise

            delay = min(max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            delay = min(delay, max(1.0, remaining))
            logger.warning(
                "DB not ready (attempt=%s). Retry in %.1fs (remaining=%.1fs). err=%r",
                attempt, delay, remaining, e,
            )
            await asyncio.sleep(delay)


async def ensure_tables() -> None:
    """В режиме SQLite таблицы создаются автоматически (для PostgreSQL: init_db.py)."""
    from database.core import Base, engine, is_sqlite
    from database.models import DriverAccount  # noqa: F401

    if not is_sqlite():
        return
    logger.info("SQLite mode: ensuring tables exist (create_all)...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("SQLite mode: tables are ready")


async def start_relays(relay) -> None:
    """Подписаться на каналы всех активных водителей."""
    from database.core import session_maker
    from services.cache import CachedDriver
    from services.db_ops import list_driver_accounts

    async with session_maker() as session:
        accounts = await list_driver_accounts(session)
    started = sum(relay.start_for(CachedDriver.from_orm(a)) for a in accounts)
    logger.info("Notification relays started: %s of %s drivers", started, len(accounts))


async def main():
    logger.info("Starting bot...")
    setup_asyncio_exception_logging()
    acquire_single_instance_lock()
    logger.info("DB_DIALECT=%s FLEETBASE_API_URL=%s", config.DB_DIALECT, config.FLEETBASE_API_URL)

    bot = Bot(token=config.BOT_TOKEN)

    # Ждём БД с ретраями (чтобы не падать на старте)
    await wait_for_db()
    await ensure_tables()

    from handlers import start, admin, driver, fallback
    from services.fleetbase import FleetbaseClient
    from services.notifications import NotificationRelay
    from services.realtime import RealtimeClient
    from services.screens import ScreenRegistry

    # Используем Redis для FSM storage, если доступен, иначе MemoryStorage
    redis_client = None
    try:
        import redis.asyncio as redis
        redis_client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            decode_responses=False
        )
        await redis_client.ping()
        from aiogram.fsm.storage.redis import RedisStorage
        storage = RedisStorage(redis=redis_client)
        logger.info("Using Redis storage for FSM")
    except Exception as e:
        logger.warning("Redis not available, using MemoryStorage: %s", e)
        from aiogram.fsm.storage.memory import MemoryStorage
        storage = MemoryStorage()
        redis_client = None

    # Кеш привязок водителей
    from services.cache import init_cache
    await init_cache(redis_client)

    fleetbase = FleetbaseClient()
    realtime = RealtimeClient()
    screens = ScreenRegistry()
    relay = NotificationRelay(bot, fleetbase, realtime)

    # Зависимости доступны хендлерам и middleware по имени аргумента
    dp = Dispatcher(storage=storage, fleetbase=fleetbase, realtime=realtime, screens=screens, relay=relay)

    # Логирование всех входящих событий + исключений с контекстом
    dp.message.middleware(LoggingMiddleware(log_success=True))
    dp.callback_query.middleware(LoggingMiddleware(log_success=True))

    # Глобальный обработчик ошибок aiogram (ловит необработанные исключения в хендлерах)
    @dp.errors()
    async def global_error_handler(event: ErrorEvent):
        exc = event.exception
        trace = f"update_id={getattr(event.update, 'update_id', None)}"
        logger.error(
            "UNHANDLED %s err=%r",
            trace,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

        # Сообщаем пользователю, не раскрывая деталей
        try:
            if event.update and event.update.message:
                await event.update.message.answer("⚠️ Произошла внутренняя ошибка. Мы уже записали её в лог.")
            elif event.update and event.update.callback_query:
                await event.update.callback_query.answer("⚠️ Ошибка. Попробуйте ещё раз.", show_alert=True)
        except TelegramAPIError as notify_error:
            logger.warning("Failed to report error to user: %s", notify_error)

    dp.message.middleware(DatabaseMiddleware())
    dp.callback_query.middleware(DatabaseMiddleware())

    # Include routers (fallback: последним, ловит необработанные обновления)
    dp.include_router(start.router)
    dp.include_router(admin.router)
    dp.include_router(driver.router)
    dp.include_router(fallback.router)

    await start_relays(relay)

    try:
        try:
            await bot.delete_webhook(drop_pending_updates=True)
            logger.info("Webhook deleted successfully")
        except TelegramAPIError as webhook_error:
            logger.warning("Error deleting webhook (may not exist): %s", webhook_error)

        logger.info("Bot started successfully")

        # Автоперезапуск polling при временных сетевых сбоях
        restart_delay = float(os.getenv("POLL_RESTART_SECONDS", "5"))
        while True:
            try:
                await dp.start_polling(
                    bot,
                    allowed_updates=["message", "callback_query"],
                    drop_pending_updates=True
                )
                break  # нормальная остановка polling
            except TelegramRetryAfter as e:
                wait_s = float(getattr(e, "retry_after", restart_delay))
                logger.warning("TelegramRetryAfter: wait %.1fs then continue", wait_s, exc_info=True)
                await asyncio.sleep(wait_s)
            except (TelegramNetworkError, TelegramServerError, asyncio.TimeoutError, OSError):
                logger.error("Polling crashed (network/server). Restart in %.1fs", restart_delay, exc_info=True)
                await asyncio.sleep(restart_delay)
    finally:
        await screens.close_all()
        await relay.close()
        await bot.session.close()
        if redis_client is not None:
            await redis_client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        sys.exit(1)
