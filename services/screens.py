"""
Открытые экраны заказов: не больше одного на чат.

Экран = контроллер + мост синхронизации + presenter. Открытие нового
экрана в чате закрывает предыдущий; закрытие освобождает подписки.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from aiogram import Bot

from services.event_bus import EventBus
from services.fleetbase import DriverSession
from services.order_controller import OrderActionController
from services.order_document import OrderDocument
from services.realtime import RealtimeClient
from services.sync_bridge import RealtimeSyncBridge
from services.telegram_presenter import TelegramOrderPresenter

logger = logging.getLogger(__name__)


@dataclass
class OrderScreen:
    chat_id: int
    controller: OrderActionController
    bridge: RealtimeSyncBridge
    presenter: TelegramOrderPresenter

    @property
    def order_id(self) -> Optional[str]:
        return self.controller.order.id

    async def close(self) -> None:
        self.presenter.cancel_confirmations()
        await self.bridge.close()


class ScreenRegistry:
    def __init__(self) -> None:
        self._screens: Dict[int, OrderScreen] = {}
        self._lock = asyncio.Lock()

    def get(self, chat_id: int) -> Optional[OrderScreen]:
        return self._screens.get(chat_id)

    def find(self, chat_id: int, order_id: str) -> Optional[OrderScreen]:
        """Экран чата, если он показывает именно этот заказ."""
        screen = self._screens.get(chat_id)
        if screen is not None and screen.order_id == order_id:
            return screen
        return None

    async def put(self, screen: OrderScreen) -> None:
        async with self._lock:
            previous = self._screens.get(screen.chat_id)
            self._screens[screen.chat_id] = screen
        if previous is not None and previous is not screen:
            logger.debug("Replacing order screen %s in chat %s", previous.order_id, screen.chat_id)
            await previous.close()

    async def close(self, chat_id: int, screen: Optional[OrderScreen] = None) -> bool:
        """Закрыть экран чата (если передан screen, то только если он всё ещё текущий)."""
        async with self._lock:
            current = self._screens.get(chat_id)
            if current is None or (screen is not None and current is not screen):
                return False
            del self._screens[chat_id]
        await current.close()
        return True

    async def close_all(self) -> None:
        async with self._lock:
            screens = list(self._screens.values())
            self._screens.clear()
        for screen in screens:
            try:
                await screen.close()
            except Exception as e:
                logger.error("Failed to close order screen in chat %s: %s", screen.chat_id, e, exc_info=True)

    def __len__(self) -> int:
        return len(self._screens)


async def open_order_screen(
    registry: ScreenRegistry,
    bot: Bot,
    chat_id: int,
    order: OrderDocument,
    driver: DriverSession,
    bus: EventBus,
    realtime: Optional[RealtimeClient] = None,
    message_id: Optional[int] = None,
) -> OrderScreen:
    """
    Открыть экран уже загруженного заказа.

    Заказ только что прочитан, поэтому первичная перезагрузка не нужна:
    мост подписывается на сигналы без начального load_order.
    """
    presenter = TelegramOrderPresenter(bot, chat_id, message_id=message_id)
    controller = OrderActionController(order, driver.client, driver, presenter)
    bridge = RealtimeSyncBridge(controller, bus, realtime)
    screen = OrderScreen(chat_id, controller, bridge, presenter)

    async def _dismiss() -> None:
        await registry.close(chat_id, screen)

    presenter.on_dismiss = _dismiss

    await registry.put(screen)
    await presenter.show_order(order)
    await bridge.start(initial_load=False)
    logger.info("Order screen %s opened in chat %s", order.id, chat_id)
    return screen
