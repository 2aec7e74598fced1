"""
Локальная шина событий: именованные каналы publish/subscribe внутри процесса.

Шина передаётся зависимостью туда, где нужна (экран заказа, ретранслятор
уведомлений), глобального экземпляра нет. Подписка возвращает handle,
который владелец обязан закрыть.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "notification"

Handler = Callable[[Any], Union[Awaitable[None], None]]


class Subscription:
    """Handle подписки. close() идемпотентен."""

    def __init__(self, bus: "EventBus", channel: str, handler: Handler):
        self.bus = bus
        self.channel = channel
        self.handler = handler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EventBus:
    """In-process шина с именованными каналами."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, channel: str, handler: Handler) -> Subscription:
        subscription = Subscription(self, channel, handler)
        self._subscribers[channel].append(subscription)
        logger.debug("Subscribed to channel=%s (total=%s)", channel, len(self._subscribers[channel]))
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.channel)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._subscribers[subscription.channel]

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self._subscribers.get(channel, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    async def publish(self, channel: str, payload: Any = None) -> int:
        """
        Доставить событие всем подписчикам канала.

        Ошибка одного обработчика логируется и не мешает остальным.

        Returns:
            Количество подписчиков, получивших событие
        """
        # Копия: обработчик может отписаться прямо во время рассылки
        subscribers = list(self._subscribers.get(channel, ()))
        delivered = 0
        for subscription in subscribers:
            if subscription.closed:
                continue
            try:
                result = subscription.handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Event handler failed on channel=%s: %s", channel, e, exc_info=True)
        return delivered
