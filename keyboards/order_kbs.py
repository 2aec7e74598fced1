import enum
from typing import Any, Dict, List, Optional, Sequence

from aiogram.filters.callback_data import CallbackData
from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton, ReplyKeyboardMarkup, KeyboardButton

from services import routing
from services.activity import ActivityResolution, ResolutionKind
from services.order_card import render_order_row, stop_label
from services.order_document import OrderDocument, OrderPhase

MENU_ORDERS_TEXT = "📋 Мои заказы"
MENU_LOCATION_TEXT = "📍 Отправить геопозицию"


class OrderAction(str, enum.Enum):
    OPEN = "open"
    START = "start"
    ACCEPT = "accept"
    DECLINE = "decline"
    UPDATE_ACTIVITY = "activity"
    PICK_DESTINATION = "dest"
    COMPLETE = "complete"
    REFRESH = "refresh"
    BACK = "back"
    CLOSE = "close"


class OrderActionCallback(CallbackData, prefix="ord"):
    action: OrderAction
    order_id: str


class ActivityCallback(CallbackData, prefix="act"):
    order_id: str
    index: int  # позиция в списке предложенных активностей


class WaypointCallback(CallbackData, prefix="wp"):
    order_id: str
    index: int  # позиция в списке точек, показанном водителю


class ConfirmCallback(CallbackData, prefix="cf"):
    token: str
    accept: bool


def _action_button(text: str, action: OrderAction, order_id: str) -> InlineKeyboardButton:
    return InlineKeyboardButton(
        text=text, callback_data=OrderActionCallback(action=action, order_id=order_id).pack()
    )


def get_driver_menu_kb() -> ReplyKeyboardMarkup:
    """Главное меню водителя. Геопозицию можно отправить только reply-кнопкой."""
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=MENU_ORDERS_TEXT)],
            [KeyboardButton(text=MENU_LOCATION_TEXT, request_location=True)],
        ],
        resize_keyboard=True
    )


def get_order_actions_kb(order: OrderDocument, navigation_enabled: bool = False) -> InlineKeyboardMarkup:
    """
    Кнопки экрана заказа в зависимости от его состояния.

    - новый adhoc-заказ: принять / отказаться;
    - не начат: начать;
    - в работе без назначения (мульти-дроп): выбрать назначение;
    - в работе: обновить статус, сменить назначение, маршрут;
    - завершён/отменён: только обновить и закрыть.
    """
    order_id = order.id or ""
    phase = order.state.phase
    rows = []

    if phase == OrderPhase.PING_PENDING:
        rows.append([
            _action_button("✅ Принять", OrderAction.ACCEPT, order_id),
            _action_button("✖️ Отказаться", OrderAction.DECLINE, order_id),
        ])
        return InlineKeyboardMarkup(inline_keyboard=rows)

    if phase in (OrderPhase.NOT_STARTED, OrderPhase.DISPATCHED):
        rows.append([_action_button("🚀 Начать заказ", OrderAction.START, order_id)])
    elif phase == OrderPhase.IN_PROGRESS:
        if routing.can_set_destination(order):
            rows.append([_action_button("📍 Выбрать назначение", OrderAction.PICK_DESTINATION, order_id)])
        else:
            rows.append([_action_button("🔄 Обновить статус", OrderAction.UPDATE_ACTIVITY, order_id)])
            if routing.can_change_destination(order) and len(routing.waypoints_in_progress(order)) > 1:
                rows.append([_action_button("🔀 Сменить назначение", OrderAction.PICK_DESTINATION, order_id)])
        if routing.can_navigate(order, navigation_enabled):
            url = routing.generate_navigation_url(routing.current_destination(order))
            if url:
                rows.append([InlineKeyboardButton(text="🗺 Маршрут", url=url)])

    rows.append([
        _action_button("♻️ Обновить", OrderAction.REFRESH, order_id),
        _action_button("⬅️ Закрыть", OrderAction.CLOSE, order_id),
    ])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_activity_choice_kb(order_id: str, resolution: ActivityResolution) -> InlineKeyboardMarkup:
    """Выбор следующей активности. Пустой ответ сервера: предложить завершить заказ."""
    rows = []
    if resolution.kind == ResolutionKind.NONE:
        rows.append([_action_button("🏁 Завершить заказ", OrderAction.COMPLETE, order_id)])
    else:
        for index, activity in enumerate(resolution.activities):
            icon = "🏁" if resolution.kind == ResolutionKind.COMPLETE else "▶️"
            label = activity.status or activity.code
            if activity.require_pod:
                label += " 📸"
            rows.append([
                InlineKeyboardButton(
                    text=f"{icon} {label}",
                    callback_data=ActivityCallback(order_id=order_id, index=index).pack()
                )
            ])
    rows.append([_action_button("⬅️ Назад", OrderAction.BACK, order_id)])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_waypoint_choice_kb(
    order_id: str,
    waypoints: Sequence[Dict[str, Any]],
    current_id: Optional[str] = None,
) -> InlineKeyboardMarkup:
    rows = []
    for index, waypoint in enumerate(waypoints):
        mark = "📍" if waypoint.get("id") == current_id else "▫️"
        rows.append([
            InlineKeyboardButton(
                text=f"{mark} {stop_label(waypoint)}"[:60],
                callback_data=WaypointCallback(order_id=order_id, index=index).pack()
            )
        ])
    rows.append([_action_button("⬅️ Назад", OrderAction.BACK, order_id)])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_confirm_kb(token: str, accept_label: str, reject_label: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text=accept_label, callback_data=ConfirmCallback(token=token, accept=True).pack()),
        InlineKeyboardButton(text=reject_label, callback_data=ConfirmCallback(token=token, accept=False).pack()),
    ]])


def get_orders_list_kb(orders: List[OrderDocument]) -> InlineKeyboardMarkup:
    rows = []
    for order in orders:
        if not order.id:
            continue
        rows.append([_action_button(render_order_row(order)[:60], OrderAction.OPEN, order.id)])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def get_order_ping_kb(order_id: str) -> InlineKeyboardMarkup:
    """Карточка входящего adhoc-заказа."""
    return InlineKeyboardMarkup(inline_keyboard=[
        [_action_button("👀 Открыть заказ", OrderAction.OPEN, order_id)],
    ])
