"""
Синхронизация экрана заказа с внешними сигналами.

Источники сигналов:
- локальная шина событий, канал "notification" (входящие уведомления);
- возврат экрана на передний план (on_focus);
- realtime-канал order.<id>, если передан клиент.

Любой сигнал приводит к перечитыванию заказа. Сигналы схлопываются: в
полёте не больше одной перезагрузки, и ещё одна запускается после неё,
если за это время пришли новые сигналы.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

from services.event_bus import NOTIFICATION_CHANNEL, EventBus, Subscription
from services.order_controller import OrderActionController
from services.realtime import RealtimeClient, message_order_id, order_channel

logger = logging.getLogger(__name__)

# Перезагрузки, пережившие закрытие экрана: держим ссылку до завершения
_detached: Set[asyncio.Task] = set()


class RealtimeSyncBridge:
    """Подписки экрана заказа. Владелец экрана обязан вызвать close()."""

    def __init__(
        self,
        controller: OrderActionController,
        bus: EventBus,
        realtime: Optional[RealtimeClient] = None,
        notification_channel: str = NOTIFICATION_CHANNEL,
    ):
        self.controller = controller
        self.bus = bus
        self.realtime = realtime
        self.notification_channel = notification_channel

        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._reload_task: Optional[asyncio.Task] = None
        self._reload_pending = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def reload_in_flight(self) -> bool:
        return self._reload_task is not None and not self._reload_task.done()

    async def start(self, initial_load: bool = True) -> None:
        if self._closed:
            raise RuntimeError("bridge is closed")
        if self._subscription is None:
            self._subscription = self.bus.subscribe(self.notification_channel, self._on_notification)
        if self.realtime is not None and self._listener is None and self.controller.order.id:
            self._listener = asyncio.create_task(
                self._listen(order_channel(self.controller.order.id)),
                name=f"order-sync-{self.controller.order.id}",
            )
        if initial_load:
            self.request_reload("mount")

    async def _on_notification(self, notification: Any) -> None:
        self.request_reload("notification")

    def on_focus(self) -> None:
        self.request_reload("focus")

    async def _listen(self, channel: str) -> None:
        try:
            async for message in self.realtime.subscribe(channel):
                order_id = message_order_id(message)
                if order_id is None:
                    continue
                if order_id != self.controller.order.id:
                    logger.debug("Ignoring socket message for order %s on %s", order_id, channel)
                    continue
                self.request_reload("socket")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Socket listener for %s stopped: %s", channel, e, exc_info=True)

    def request_reload(self, reason: str) -> None:
        """Запросить перезагрузку; при уже идущей, запомнить и выполнить после неё."""
        if self._closed:
            return
        if self.reload_in_flight:
            self._reload_pending = True
            logger.debug("Order %s reload (%s) coalesced", self.controller.order.id, reason)
            return
        self._reload_task = asyncio.create_task(
            self._reload_loop(reason), name=f"order-reload-{self.controller.order.id}"
        )

    async def _reload_loop(self, reason: str) -> None:
        while not self._closed:
            self._reload_pending = False
            logger.debug("Reloading order %s (%s)", self.controller.order.id, reason)
            try:
                await self.controller.load_order()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Order %s reload failed: %s", self.controller.order.id, e, exc_info=True)
            if not self._reload_pending:
                break
            reason = "coalesced"

    async def wait_idle(self) -> None:
        """Дождаться завершения текущей перезагрузки (для тестов и shutdown)."""
        while self.reload_in_flight:
            await asyncio.shield(self._reload_task)

    async def close(self) -> None:
        """
        Освободить подписки и прекратить применение результатов.

        Уже отправленный запрос перезагрузки не отменяется: он завершится,
        а контроллер отбросит его ответ.
        """
        if self._closed:
            return
        self._closed = True
        self.controller.close()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        if self.reload_in_flight:
            _detached.add(self._reload_task)
            self._reload_task.add_done_callback(_detached.discard)
        logger.debug("Sync bridge for order %s closed", self.controller.order.id)

    async def __aenter__(self) -> "RealtimeSyncBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
