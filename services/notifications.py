"""
Ретрансляция уведомлений водителю.

Для каждого привязанного водителя слушается realtime-канал driver.<id>.
Каждое входящее сообщение публикуется в локальную шину водителя
(канал "notification"), на которую подписаны его открытые экраны.
Если сообщение касается заказа, который оказался новым adhoc-заказом
без водителя, водителю отправляется карточка заказа.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from config import config
from keyboards.order_kbs import get_order_ping_kb
from services.cache import CachedDriver
from services.event_bus import NOTIFICATION_CHANNEL, EventBus
from services.fleetbase import FleetbaseClient, FleetbaseError
from services.order_card import render_order_card
from services.realtime import RealtimeClient, driver_channel, message_order_id
from services.telegram_utils import safe_send_message

logger = logging.getLogger(__name__)

# Сколько последних заказов помнить на чат, чтобы не слать карточку повторно
PINGED_HISTORY = 500


class NotificationRelay:
    """Подписки на каналы водителей и локальные шины по чатам."""

    def __init__(
        self,
        bot: Bot,
        client: FleetbaseClient,
        realtime: Optional[RealtimeClient] = None,
        enabled: Optional[bool] = None,
    ):
        self.bot = bot
        self.client = client
        self.realtime = realtime
        self.enabled = enabled if enabled is not None else config.NOTIFICATION_RELAY_ENABLED
        self._buses: Dict[int, EventBus] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._drivers: Dict[int, CachedDriver] = {}
        # Заказы, о которых водитель уже уведомлён (старые вытесняются)
        self._pinged: Dict[int, OrderedDict] = {}

    def bus_for(self, telegram_id: int) -> EventBus:
        """Локальная шина чата водителя (создаётся при первом обращении)."""
        bus = self._buses.get(telegram_id)
        if bus is None:
            bus = self._buses[telegram_id] = EventBus()
        return bus

    def is_running(self, telegram_id: int) -> bool:
        task = self._tasks.get(telegram_id)
        return task is not None and not task.done()

    def start_for(self, driver: CachedDriver) -> bool:
        """
        Запустить прослушивание канала водителя для его чата.

        Если чат уже слушает канал с другой привязкой (другой водитель
        или новый токен), старая подписка отменяется. Повторный вызов
        с той же привязкой ничего не делает и возвращает False.
        """
        if not self.enabled or self.realtime is None or not driver.is_active:
            return False
        if self.is_running(driver.telegram_id):
            previous = self._drivers.get(driver.telegram_id)
            if previous == driver:
                return False
            self._tasks.pop(driver.telegram_id).cancel()
            self._pinged.pop(driver.telegram_id, None)
            logger.info(
                "Notification relay for chat %s switches from %s to %s",
                driver.telegram_id, previous.driver_id if previous else None, driver.driver_id,
            )
        self._drivers[driver.telegram_id] = driver
        self._tasks[driver.telegram_id] = asyncio.create_task(
            self._listen(driver), name=f"relay-{driver.driver_id}"
        )
        logger.info("Notification relay started for driver %s (chat %s)", driver.driver_id, driver.telegram_id)
        return True

    async def stop_for(self, telegram_id: int) -> None:
        task = self._tasks.pop(telegram_id, None)
        self._drivers.pop(telegram_id, None)
        self._pinged.pop(telegram_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Notification relay stopped for chat %s", telegram_id)

    async def close(self) -> None:
        for telegram_id in list(self._tasks):
            await self.stop_for(telegram_id)

    async def _listen(self, driver: CachedDriver) -> None:
        channel = driver_channel(driver.driver_id)
        try:
            async for message in self.realtime.subscribe(channel):
                try:
                    await self.handle_message(driver, message)
                except Exception as e:
                    logger.error("Notification on %s could not be handled: %s", channel, e, exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Notification relay for %s stopped: %s", channel, e, exc_info=True)

    async def handle_message(self, driver: CachedDriver, message) -> None:
        """Одно сообщение канала водителя: в шину, и при необходимости: карточка заказа."""
        await self.bus_for(driver.telegram_id).publish(NOTIFICATION_CHANNEL, message)

        order_id = message_order_id(message)
        if order_id is None:
            return
        pinged = self._pinged.setdefault(driver.telegram_id, OrderedDict())
        if order_id in pinged:
            return
        try:
            order = await self.client.with_token(driver.api_token).find_record(order_id)
        except FleetbaseError as e:
            logger.warning("Order %s from notification could not be loaded: %s", order_id, e.message)
            return
        if not order.is_order_ping:
            return

        pinged[order_id] = True
        while len(pinged) > PINGED_HISTORY:
            pinged.popitem(last=False)
        try:
            await safe_send_message(
                self.bot,
                driver.telegram_id,
                render_order_card(order),
                reply_markup=get_order_ping_kb(order_id),
            )
        except TelegramAPIError as e:
            logger.error("Failed to send order ping %s to chat %s: %s", order_id, driver.telegram_id, e)
            return
        logger.info("Order ping %s sent to driver %s", order_id, driver.driver_id)
