import logging
from typing import Optional

from aiogram import Bot, Router, types, F
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext
from sqlalchemy.ext.asyncio import AsyncSession

from keyboards.order_kbs import (
    MENU_ORDERS_TEXT,
    ActivityCallback,
    ConfirmCallback,
    OrderAction,
    OrderActionCallback,
    WaypointCallback,
    get_driver_menu_kb,
    get_orders_list_kb,
)
from middlewares.auth_middleware import DriverMiddleware
from services import routing
from services.db_ops import touch_driver_location
from services.fleetbase import DriverSession, FleetbaseError
from services.notifications import NotificationRelay
from services.realtime import RealtimeClient
from services.screens import OrderScreen, ScreenRegistry, open_order_screen
from services.telegram_utils import safe_edit_message
from services.validation import OrderDateInput, validate_input
from states.driver_states import DriverState

logger = logging.getLogger(__name__)
router = Router()
router.message.middleware(DriverMiddleware())
router.callback_query.middleware(DriverMiddleware())

BUSY_TEXT = "⏳ Подождите, выполняется предыдущее действие."


async def _open_order(
    bot: Bot,
    chat_id: int,
    order_id: str,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient],
    state: FSMContext,
) -> Optional[OrderScreen]:
    """Загрузить заказ и открыть его экран в чате."""
    try:
        order = await driver.client.find_record(order_id)
    except FleetbaseError as e:
        logger.warning("Driver %s failed to open order %s: %s", driver.id, order_id, e.message)
        await bot.send_message(chat_id, f"❌ Не удалось загрузить заказ: {e.message}")
        return None

    screen = await open_order_screen(
        screens, bot, chat_id, order, driver, relay.bus_for(chat_id), realtime
    )
    await state.set_state(DriverState.viewing_order)
    await state.update_data(order_id=order_id)
    return screen


async def _require_screen(
    callback: types.CallbackQuery,
    order_id: str,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient],
    state: FSMContext,
) -> Optional[OrderScreen]:
    """
    Экран заказа из callback. Если экран уже закрыт (другой заказ, перезапуск
    бота), он открывается заново, а действие нужно повторить.
    """
    chat_id = callback.message.chat.id
    screen = screens.find(chat_id, order_id)
    if screen is not None:
        return screen
    await callback.answer("Экран заказа обновлён, повторите действие.")
    await _open_order(callback.bot, chat_id, order_id, driver, screens, relay, realtime, state)
    return None


# --- список заказов ---

@router.message(Command("orders"))
async def cmd_orders(message: types.Message, command: CommandObject, driver: DriverSession):
    try:
        day = validate_input(OrderDateInput, command.args or "")
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return
    await _send_orders(message, driver, day)


@router.message(F.text == MENU_ORDERS_TEXT)
async def menu_orders(message: types.Message, driver: DriverSession):
    await _send_orders(message, driver, OrderDateInput())


async def _send_orders(message: types.Message, driver: DriverSession, day: OrderDateInput):
    try:
        orders = await driver.client.query_orders({"driver": driver.id, "on": day.query_value})
    except FleetbaseError as e:
        logger.warning("Orders query failed for driver %s: %s", driver.id, e.message)
        await message.answer(f"❌ Не удалось получить заказы: {e.message}")
        return

    if not orders:
        await message.answer(f"На {day.query_value} заказов нет.", reply_markup=get_driver_menu_kb())
        return
    await message.answer(
        f"📋 *Заказы на {day.query_value}* ({len(orders)})",
        reply_markup=get_orders_list_kb(orders),
        parse_mode="Markdown"
    )


# --- экран заказа ---

@router.callback_query(OrderActionCallback.filter(F.action == OrderAction.OPEN))
async def open_order(
    callback: types.CallbackQuery,
    callback_data: OrderActionCallback,
    state: FSMContext,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient] = None,
):
    await callback.answer()
    await _open_order(
        callback.bot, callback.message.chat.id, callback_data.order_id,
        driver, screens, relay, realtime, state,
    )


@router.message(Command("order"))
async def cmd_current_order(
    message: types.Message,
    state: FSMContext,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient] = None,
):
    """Вернуться к открытому заказу: карточка отправляется заново и перечитывается."""
    screen = screens.get(message.chat.id)
    if screen is not None:
        screen.presenter.message_id = None
        await screen.presenter.show_order(screen.controller.order)
        screen.bridge.on_focus()
        return

    data = await state.get_data()
    order_id = data.get("order_id")
    if not order_id:
        await message.answer("Нет открытого заказа. Список заказов: /orders", reply_markup=get_driver_menu_kb())
        return
    await _open_order(message.bot, message.chat.id, order_id, driver, screens, relay, realtime, state)


@router.callback_query(OrderActionCallback.filter())
async def order_action(
    callback: types.CallbackQuery,
    callback_data: OrderActionCallback,
    state: FSMContext,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient] = None,
):
    screen = await _require_screen(callback, callback_data.order_id, driver, screens, relay, realtime, state)
    if screen is None:
        return
    controller = screen.controller
    action = callback_data.action

    if action == OrderAction.CLOSE:
        await callback.answer()
        await screens.close(screen.chat_id, screen)
        await safe_edit_message(
            callback.bot, screen.chat_id, callback.message.message_id, "Экран заказа закрыт.", reply_markup=None
        )
        await state.clear()
        return

    if action == OrderAction.BACK:
        await callback.answer()
        await screen.presenter.show_order(controller.order)
        return

    if controller.is_busy:
        await callback.answer(BUSY_TEXT, show_alert=True)
        return
    await callback.answer()

    if action == OrderAction.START:
        await controller.start()
    elif action == OrderAction.ACCEPT:
        await controller.accept_adhoc()
    elif action == OrderAction.DECLINE:
        await controller.decline_adhoc()
        await state.clear()
    elif action == OrderAction.UPDATE_ACTIVITY:
        await controller.update_activity()
    elif action == OrderAction.PICK_DESTINATION:
        if not await controller.open_destination_picker():
            await screen.presenter.show_order(controller.order)
    elif action == OrderAction.COMPLETE:
        await controller.complete_order()
    elif action == OrderAction.REFRESH:
        await controller.load_order(refreshing=True)


@router.callback_query(ActivityCallback.filter())
async def activity_chosen(
    callback: types.CallbackQuery,
    callback_data: ActivityCallback,
    state: FSMContext,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient] = None,
):
    screen = await _require_screen(callback, callback_data.order_id, driver, screens, relay, realtime, state)
    if screen is None:
        return
    controller = screen.controller
    resolution = controller.next_activity
    if resolution is None or not 0 <= callback_data.index < len(resolution.activities):
        await callback.answer("Выбор устарел.", show_alert=True)
        await screen.presenter.show_order(controller.order)
        return
    if controller.is_busy:
        await callback.answer(BUSY_TEXT, show_alert=True)
        return
    await callback.answer()
    await controller.send_activity_update(resolution.activities[callback_data.index])


@router.callback_query(WaypointCallback.filter())
async def waypoint_chosen(
    callback: types.CallbackQuery,
    callback_data: WaypointCallback,
    state: FSMContext,
    driver: DriverSession,
    screens: ScreenRegistry,
    relay: NotificationRelay,
    realtime: Optional[RealtimeClient] = None,
):
    screen = await _require_screen(callback, callback_data.order_id, driver, screens, relay, realtime, state)
    if screen is None:
        return
    controller = screen.controller
    choices = screen.presenter.waypoint_choices
    if not 0 <= callback_data.index < len(choices):
        await callback.answer("Выбор устарел.", show_alert=True)
        await screen.presenter.show_order(controller.order)
        return
    if controller.is_busy:
        await callback.answer(BUSY_TEXT, show_alert=True)
        return
    await callback.answer()

    waypoint_id = choices[callback_data.index].get("id")
    if routing.can_set_destination(controller.order):
        applied = await controller.set_destination(waypoint_id)
    else:
        applied = await controller.change_destination(waypoint_id)
    if not applied and not controller.closed:
        await screen.presenter.show_order(controller.order)


@router.callback_query(ConfirmCallback.filter())
async def confirmation_answered(
    callback: types.CallbackQuery,
    callback_data: ConfirmCallback,
    screens: ScreenRegistry,
):
    screen = screens.get(callback.message.chat.id)
    if screen is None or not screen.presenter.resolve_confirmation(callback_data.token, callback_data.accept):
        await callback.answer("Подтверждение устарело.")
        return
    await callback.answer("Принято" if callback_data.accept else "Отменено")


# --- геопозиция ---

@router.message(F.location)
async def driver_location(
    message: types.Message,
    session: AsyncSession,
    driver: DriverSession,
    screens: ScreenRegistry,
):
    lat = message.location.latitude
    lon = message.location.longitude
    screen = screens.get(message.chat.id)

    if screen is not None:
        screen.presenter.driver_location = (lat, lon)
        sent = await screen.controller.track_location(lat, lon)
    else:
        try:
            await driver.track(lat, lon)
            sent = True
        except FleetbaseError as e:
            logger.warning("Driver %s location update failed: %s", driver.id, e.message)
            sent = False

    if not sent:
        await message.answer("⚠️ Не удалось отправить геопозицию. Попробуйте позже.")
        return
    await touch_driver_location(session, message.from_user.id)

    text = "📍 Геопозиция отправлена."
    if screen is not None:
        destination = screen.controller.destination
        distance = routing.distance_to(destination, lat, lon) if destination else None
        if distance is not None:
            text += f"\nДо точки назначения: {distance:.1f} км"
        await screen.presenter.show_order(screen.controller.order)
    await message.answer(text)
