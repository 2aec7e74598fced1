import logging
from aiogram import Router, types
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import CommandStart
from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from keyboards.order_kbs import get_driver_menu_kb
from services.db_ops import get_cached_driver
from services.notifications import NotificationRelay

logger = logging.getLogger(__name__)
router = Router()

ADMIN_HELP = (
    "Панель диспетчера.\n\n"
    "/link <telegram_id> <driver_id> [token] — привязать водителя\n"
    "/unlink <telegram_id> — отвязать водителя\n"
    "/drivers — привязанные водители"
)


@router.message(CommandStart())
async def cmd_start(message: types.Message, session: AsyncSession, relay: NotificationRelay):
    telegram_id = message.from_user.id
    full_name = message.from_user.full_name

    if telegram_id in config.ADMIN_IDS_LIST:
        await message.answer(f"Добро пожаловать, {full_name}!\n\n{ADMIN_HELP}")
        return

    account = await get_cached_driver(session, telegram_id)
    if account is not None and account.is_active:
        relay.start_for(account)
        await message.answer(
            f"Добро пожаловать, {account.full_name}!\n\n"
            "📋 Мои заказы — заказы на сегодня, /orders ДД-ММ-ГГГГ — на другую дату.\n"
            "/order — вернуться к открытому заказу.",
            reply_markup=get_driver_menu_kb()
        )
        return

    await message.answer(
        "Ваш аккаунт ещё не привязан к водителю.\n"
        f"Ваш Telegram ID: {telegram_id}. Заявка отправлена диспетчеру."
    )
    for admin_id in config.ADMIN_IDS_LIST:
        try:
            await message.bot.send_message(
                chat_id=admin_id,
                text=(
                    f"Новый пользователь: {full_name} (ID: {telegram_id})\n"
                    f"Привязать: /link {telegram_id} driver_XXXX"
                )
            )
        except TelegramAPIError as e:
            logger.error("Failed to notify admin %s: %s", admin_id, e, exc_info=True)
