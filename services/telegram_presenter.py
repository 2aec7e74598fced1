"""
Отображение экрана заказа в чате Telegram.

Экран заказа это одно сообщение с карточкой и кнопками; оно редактируется
при каждом новом снимке заказа. Подтверждения отправляются отдельным
сообщением с двумя кнопками и ждут нажатия через Future: ответ приходит
из callback-хендлера (resolve_confirmation). Нет ответа за CONFIRM_TIMEOUT
считается отказом.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiogram import Bot

from config import config
from keyboards.order_kbs import (
    get_activity_choice_kb,
    get_confirm_kb,
    get_order_actions_kb,
    get_waypoint_choice_kb,
)
from services import routing
from services.activity import Activity, ActivityResolution, ResolutionKind
from services.order_card import render_order_card, stop_label
from services.order_document import OrderDocument
from services.telegram_utils import escape_markdown, safe_edit_message, safe_send_message

logger = logging.getLogger(__name__)


class TelegramOrderPresenter:
    """Presenter контроллера заказа поверх aiogram Bot."""

    def __init__(
        self,
        bot: Bot,
        chat_id: int,
        message_id: Optional[int] = None,
        navigation_enabled: Optional[bool] = None,
        confirm_timeout: Optional[float] = None,
        on_dismiss: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.bot = bot
        self.chat_id = chat_id
        self.message_id = message_id
        self.navigation_enabled = (
            navigation_enabled if navigation_enabled is not None else bool(config.MAPBOX_ACCESS_TOKEN)
        )
        self.confirm_timeout = confirm_timeout if confirm_timeout is not None else config.CONFIRM_TIMEOUT
        self.on_dismiss = on_dismiss

        self.driver_location: Optional[Tuple[float, float]] = None
        # Точки, показанные водителю в последнем выборе назначения
        self.waypoint_choices: List[Dict[str, Any]] = []
        self._pending: Dict[str, asyncio.Future] = {}
        self._last_order: Optional[OrderDocument] = None

    async def _render(self, text: str, reply_markup) -> None:
        """Обновить сообщение экрана; если его нет или оно удалено, отправить новое."""
        if self.message_id is not None:
            if await safe_edit_message(self.bot, self.chat_id, self.message_id, text, reply_markup=reply_markup):
                return
        sent = await safe_send_message(self.bot, self.chat_id, text, reply_markup=reply_markup)
        if sent is not None:
            self.message_id = sent.message_id

    async def show_order(self, order: OrderDocument) -> None:
        self._last_order = order
        await self._render(
            render_order_card(order, self.driver_location),
            get_order_actions_kb(order, self.navigation_enabled),
        )

    async def alert(self, title: str, message: str) -> None:
        await safe_send_message(self.bot, self.chat_id, f"⚠️ *{escape_markdown(title)}*\n{escape_markdown(message)}")

    async def confirm(self, title: str, message: str, accept_label: str, reject_label: str) -> bool:
        token = uuid.uuid4().hex[:12]
        future = asyncio.get_running_loop().create_future()
        self._pending[token] = future
        sent = await safe_send_message(
            self.bot,
            self.chat_id,
            f"❓ *{escape_markdown(title)}*\n{escape_markdown(message)}",
            reply_markup=get_confirm_kb(token, accept_label, reject_label),
        )
        try:
            return bool(await asyncio.wait_for(future, timeout=self.confirm_timeout))
        except asyncio.TimeoutError:
            logger.info("Confirmation %s in chat %s timed out", token, self.chat_id)
            return False
        finally:
            self._pending.pop(token, None)
            if sent is not None:
                await safe_edit_message(
                    self.bot, self.chat_id, sent.message_id,
                    f"❓ *{escape_markdown(title)}*\n{escape_markdown(message)}",
                    reply_markup=None,
                )

    def resolve_confirmation(self, token: str, accepted: bool) -> bool:
        """Ответ водителя на подтверждение. False: подтверждение уже неактуально."""
        future = self._pending.get(token)
        if future is None or future.done():
            return False
        future.set_result(accepted)
        return True

    def cancel_confirmations(self) -> None:
        """Все ожидающие подтверждения считаются отказом."""
        for future in self._pending.values():
            if not future.done():
                future.set_result(False)

    async def choose_activity(self, order: OrderDocument, resolution: ActivityResolution) -> None:
        if resolution.kind == ResolutionKind.NONE:
            text = "Сервер не предложил следующего шага. Можно завершить заказ."
        elif resolution.kind == ResolutionKind.COMPLETE:
            text = "Последний шаг заказа:"
        else:
            text = "Выберите следующий статус:"
        await self._render(
            f"{render_order_card(order, self.driver_location)}\n\n*{text}*",
            get_activity_choice_kb(order.id or "", resolution),
        )

    async def choose_waypoint(self, order: OrderDocument, waypoints: List[Dict[str, Any]]) -> None:
        self.waypoint_choices = list(waypoints)
        current = routing.current_destination(order)
        await self._render(
            f"{render_order_card(order, self.driver_location)}\n\n*Выберите точку назначения:*",
            get_waypoint_choice_kb(order.id or "", self.waypoint_choices, current.get("id") if current else None),
        )

    async def request_proof(
        self, activity: Activity, order_data: Dict[str, Any], waypoint: Optional[Dict[str, Any]]
    ) -> None:
        # Съёмка подтверждения доставки выполняется вне бота
        logger.info(
            "Proof of delivery requested: order=%s activity=%s waypoint=%s",
            order_data.get("id"), activity.code, waypoint.get("id") if waypoint else None,
        )
        text = (
            f"📸 *Нужно подтверждение доставки*\n"
            f"Статус: {escape_markdown(activity.status or activity.code)}\n"
            f"Точка: {escape_markdown(stop_label(waypoint))}\n\n"
            "Зафиксируйте доставку в приложении водителя, затем нажмите «Обновить»."
        )
        await safe_send_message(self.bot, self.chat_id, text)
        if self._last_order is not None:
            await self.show_order(self._last_order)

    async def dismiss(self) -> None:
        self.cancel_confirmations()
        if self.message_id is not None:
            await safe_edit_message(self.bot, self.chat_id, self.message_id, "Экран заказа закрыт.", reply_markup=None)
        if self.on_dismiss is not None:
            await self.on_dismiss()
