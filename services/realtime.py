"""
Realtime-канал Fleetbase (SocketCluster поверх websocket).

subscribe("order.<id>") возвращает ленивый асинхронный итератор сообщений
канала. Итератор сам переподключается при обрыве; новый вызов subscribe()
даёт новый независимый итератор.

Протокол SocketCluster (JSON):
    -> {"event": "#handshake", "data": {"authToken": null}, "cid": 1}
    -> {"event": "#subscribe", "data": {"channel": "order.x"}, "cid": 2}
    <- {"event": "#publish", "data": {"channel": "order.x", "data": {...}}}
    <- "#1" (ping)  -> "#2" (pong); в v2 пинг это пустая строка
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from config import config

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "order"


def order_channel(order_id: str) -> str:
    return f"order.{order_id}"


def driver_channel(driver_id: str) -> str:
    return f"driver.{driver_id}"


def message_order_id(message: Any) -> Optional[str]:
    """id заказа из сообщения канала, если сообщение относится к заказу."""
    if not isinstance(message, dict):
        return None
    data = message.get("data")
    if not isinstance(data, dict):
        return None
    order_id = data.get("id")
    if isinstance(order_id, str) and order_id.startswith(ORDER_ID_PREFIX):
        return order_id
    return None


def is_order_message(message: Any) -> bool:
    return message_order_id(message) is not None


class RealtimeClient:
    """Клиент SocketCluster для подписки на каналы."""

    def __init__(
        self,
        url: Optional[str] = None,
        reconnect_max_delay: Optional[float] = None,
    ):
        self.url = url if url is not None else config.SOCKET_URL
        self.reconnect_max_delay = (
            reconnect_max_delay if reconnect_max_delay is not None else config.SOCKET_RECONNECT_MAX_DELAY
        )
        self._cid = 0

    def _next_cid(self) -> int:
        self._cid += 1
        return self._cid

    async def _send_event(self, ws: aiohttp.ClientWebSocketResponse, event: str, data: Dict[str, Any]) -> None:
        await ws.send_str(json.dumps({"event": event, "data": data, "cid": self._next_cid()}))

    async def _listen(self, channel: str) -> AsyncIterator[Any]:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url) as ws:
                await self._send_event(ws, "#handshake", {"authToken": None})
                await self._send_event(ws, "#subscribe", {"channel": channel})
                logger.info("Subscribed and listening to socket channel: %s", channel)

                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        raw = msg.data
                        if raw == "#1":
                            await ws.send_str("#2")
                            continue
                        if raw == "":
                            await ws.send_str("")
                            continue
                        try:
                            packet = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.debug("Non-JSON socket frame on %s: %r", channel, raw[:200])
                            continue
                        if not isinstance(packet, dict) or packet.get("event") != "#publish":
                            continue
                        data = packet.get("data") or {}
                        if data.get("channel") != channel:
                            continue
                        logger.debug("[socket #data] (%s) %s", channel, data.get("data"))
                        yield data.get("data")
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break

    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """
        Бесконечный итератор сообщений канала с переподключением.
        Завершается только отменой задачи-потребителя.
        """
        attempt = 0
        while True:
            try:
                async with aclosing(self._listen(channel)) as messages:
                    async for message in messages:
                        attempt = 0
                        yield message
                logger.warning("Socket channel %s closed by server", channel)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning("Socket channel %s error: %r", channel, e)

            attempt += 1
            delay = min(self.reconnect_max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            logger.info("Reconnecting to %s in %.1fs (attempt=%s)", channel, delay, attempt)
            await asyncio.sleep(delay)
