"""
Middleware доступа водителя: Telegram-пользователь -> DriverSession Fleetbase.
"""
import logging
from typing import Callable, Dict, Any, Awaitable, Optional
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Message, CallbackQuery
from sqlalchemy.ext.asyncio import AsyncSession

from services.db_ops import get_cached_driver
from services.fleetbase import DriverSession, FleetbaseClient

logger = logging.getLogger(__name__)

NOT_LINKED_TEXT = "❌ Ваш аккаунт не привязан к водителю. Обратитесь к диспетчеру."


def event_user_id(event: TelegramObject) -> Optional[int]:
    if isinstance(event, (Message, CallbackQuery)) and event.from_user:
        return event.from_user.id
    return None


class DriverMiddleware(BaseMiddleware):
    """
    Кладёт в data['driver'] сессию водителя и в data['driver_account'] его привязку.
    Не привязанные и отключённые пользователи до хендлеров не доходят.

    Требует DatabaseMiddleware (data['session']) и клиента Fleetbase
    в workflow data диспетчера (data['fleetbase']).
    """

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user_id = event_user_id(event)
        if not user_id:
            logger.warning("No user ID found in event")
            return

        session: AsyncSession = data.get("session")
        client: FleetbaseClient = data.get("fleetbase")
        if session is None or client is None:
            logger.error("DriverMiddleware requires 'session' and 'fleetbase' in data")
            return

        account = await get_cached_driver(session, user_id)
        if account is None or not account.is_active:
            logger.info("User %s is not linked to an active driver", user_id)
            if isinstance(event, CallbackQuery):
                await event.answer(NOT_LINKED_TEXT, show_alert=True)
            elif isinstance(event, Message):
                await event.answer(NOT_LINKED_TEXT)
            return

        data["driver_account"] = account
        data["driver"] = DriverSession(
            id=account.driver_id,
            name=account.full_name,
            client=client.with_token(account.api_token),
        )
        return await handler(event, data)
