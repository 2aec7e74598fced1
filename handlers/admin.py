import logging
from aiogram import Router, types
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command, CommandObject
from sqlalchemy.ext.asyncio import AsyncSession

from config import config
from keyboards.order_kbs import get_driver_menu_kb
from services.cache import CachedDriver
from services.db_ops import link_driver, list_driver_accounts, unlink_driver
from services.fleetbase import FleetbaseClient, FleetbaseError
from services.notifications import NotificationRelay
from services.screens import ScreenRegistry
from services.validation import LinkDriverInput, TelegramIDInput, validate_input

logger = logging.getLogger(__name__)
router = Router()


def is_admin(telegram_id: int) -> bool:
    return telegram_id in config.ADMIN_IDS_LIST


@router.message(Command("link"))
async def cmd_link(
    message: types.Message,
    command: CommandObject,
    session: AsyncSession,
    fleetbase: FleetbaseClient,
    relay: NotificationRelay,
    screens: ScreenRegistry,
):
    if not is_admin(message.from_user.id):
        return
    try:
        data: LinkDriverInput = validate_input(LinkDriverInput, command.args or "")
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return

    # Водитель должен существовать в Fleetbase и быть доступен с этим токеном
    try:
        driver = await fleetbase.with_token(data.api_token).get_driver(data.driver_id)
    except FleetbaseError as e:
        await message.answer(f"❌ Водитель {data.driver_id} не найден: {e.message}")
        return

    full_name = driver.get("name") or data.driver_id
    account = await link_driver(session, data.telegram_id, data.driver_id, full_name, data.api_token)
    logger.info("Telegram user %s linked to driver %s by %s", data.telegram_id, data.driver_id, message.from_user.id)

    # Открытый экран держит сессию прежней привязки
    await screens.close(data.telegram_id)
    relay.start_for(CachedDriver.from_orm(account))
    await message.answer(f"✅ {full_name} ({data.driver_id}) привязан к Telegram ID {data.telegram_id}.")

    try:
        await message.bot.send_message(
            data.telegram_id,
            f"Ваш аккаунт привязан к водителю {full_name}. Можно работать с заказами.",
            reply_markup=get_driver_menu_kb()
        )
    except TelegramAPIError as e:
        logger.error("Failed to notify driver %s about linking: %s", data.telegram_id, e, exc_info=True)


@router.message(Command("unlink"))
async def cmd_unlink(
    message: types.Message,
    command: CommandObject,
    session: AsyncSession,
    relay: NotificationRelay,
    screens: ScreenRegistry,
):
    if not is_admin(message.from_user.id):
        return
    try:
        data: TelegramIDInput = validate_input(TelegramIDInput, command.args or "", "Формат: /unlink <telegram_id>")
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return

    if not await unlink_driver(session, data.telegram_id):
        await message.answer("Привязка не найдена.")
        return
    await relay.stop_for(data.telegram_id)
    await screens.close(data.telegram_id)
    logger.info("Telegram user %s unlinked by %s", data.telegram_id, message.from_user.id)
    await message.answer(f"✅ Telegram ID {data.telegram_id} отвязан.")


@router.message(Command("drivers"))
async def cmd_drivers(message: types.Message, session: AsyncSession, relay: NotificationRelay):
    if not is_admin(message.from_user.id):
        return
    accounts = await list_driver_accounts(session)
    if not accounts:
        await message.answer("Привязанных водителей нет.")
        return
    lines = ["👥 Привязанные водители:"]
    for account in accounts:
        live = "🟢" if relay.is_running(account.telegram_id) else "⚪️"
        lines.append(f"{live} {account.full_name} — {account.driver_id} (ID: {account.telegram_id})")
    await message.answer("\n".join(lines))
