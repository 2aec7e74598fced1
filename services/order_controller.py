"""
Контроллер действий над заказом водителя.

Оркестрирует переходы заказа (старт, принятие adhoc, обновление
активности, смена назначения, завершение) через Fleetbase API и заменяет
документ заказа снимком из ответа. Все ошибки сервера ловятся здесь:
логируются и показываются пользователю как неблокирующее сообщение,
до слоя отображения они не доходят.

Мутирующие операции сериализуются: пока одна выполняется, вторая
отклоняется. Чтения (load_order) могут пересекаться, побеждает последний
пришедший ответ, кроме явно устаревшего по updated_at.
"""
from __future__ import annotations

import asyncio
import copy
import enum
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

from config import config
from services import routing
from services.activity import Activity, ActivityResolution, resolve_next_activity
from services.financials import Financials, compute_financials
from services.fleetbase import DriverSession, FleetbaseClient, FleetbaseError
from services.order_document import OrderDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_DISPATCHED_PREFIX = "Order has not been dispatched"


class OrderPresenter(Protocol):
    """То, что контроллер требует от слоя отображения."""

    async def show_order(self, order: OrderDocument) -> None: ...

    async def alert(self, title: str, message: str) -> None: ...

    async def confirm(self, title: str, message: str, accept_label: str, reject_label: str) -> bool: ...

    async def choose_activity(self, order: OrderDocument, resolution: ActivityResolution) -> None: ...

    async def choose_waypoint(self, order: OrderDocument, waypoints: List[Dict[str, Any]]) -> None: ...

    async def request_proof(
        self, activity: Activity, order_data: Dict[str, Any], waypoint: Optional[Dict[str, Any]]
    ) -> None: ...

    async def dismiss(self) -> None: ...


class ActionSheet(str, enum.Enum):
    UPDATE_ACTIVITY = "update_activity"
    CHANGE_DESTINATION = "change_destination"


class OrderActionController:
    """Машина состояний заказа на стороне клиента."""

    def __init__(
        self,
        order: OrderDocument,
        client: FleetbaseClient,
        driver: DriverSession,
        presenter: OrderPresenter,
        timeout: Optional[float] = None,
        navigation_enabled: Optional[bool] = None,
    ):
        self.order = order
        self.client = client
        self.driver = driver
        self.presenter = presenter
        self.timeout = timeout if timeout is not None else config.ACTION_TIMEOUT
        self.navigation_enabled = (
            navigation_enabled if navigation_enabled is not None else bool(config.MAPBOX_ACCESS_TOKEN)
        )

        self.is_refreshing = False
        self.is_loading_action = False
        self.is_loading_activity = False
        self.next_activity: Optional[ActivityResolution] = None
        self.action_sheet = ActionSheet.UPDATE_ACTIVITY

        self._loads_in_flight = 0
        self._mutation_lock = asyncio.Lock()
        self._closed = False

    # --- производные факты ---

    @property
    def is_loading(self) -> bool:
        return self._loads_in_flight > 0

    @property
    def is_busy(self) -> bool:
        return self._mutation_lock.locked()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def destination(self) -> Optional[Dict[str, Any]]:
        return routing.current_destination(self.order)

    @property
    def financials(self) -> Financials:
        return compute_financials(self.order)

    @property
    def can_navigate(self) -> bool:
        return routing.can_navigate(self.order, self.navigation_enabled)

    @property
    def can_set_destination(self) -> bool:
        return routing.can_set_destination(self.order)

    # --- служебное ---

    @asynccontextmanager
    async def _loading(self, flag: str):
        setattr(self, flag, True)
        try:
            yield
        finally:
            setattr(self, flag, False)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise FleetbaseError("Сервер не ответил вовремя. Попробуйте ещё раз.") from e

    def _reject_if_busy(self, action: str) -> bool:
        if self._closed:
            logger.debug("Order %s: %s ignored, screen is closed", self.order.id, action)
            return True
        if self._mutation_lock.locked():
            logger.warning("Order %s: %s rejected, another action is in flight", self.order.id, action)
            return True
        return False

    async def _present(self, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Presenter failed for order %s: %s", self.order.id, e, exc_info=True)

    async def _ask(self, title: str, message: str, accept_label: str, reject_label: str) -> bool:
        if self._closed:
            return False
        try:
            return bool(await self.presenter.confirm(title, message, accept_label, reject_label))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Confirmation failed for order %s: %s", self.order.id, e, exc_info=True)
            return False

    async def _report(self, error: FleetbaseError, action: str) -> None:
        logger.error("Order %s: %s failed: %r", self.order.id, action, error)
        if self._closed:
            return
        await self._present(self.presenter.alert("Ошибка", error.message or "Произошла ошибка"))

    def _is_stale(self, fresh: OrderDocument) -> bool:
        current, incoming = self.order.version, fresh.version
        if current is None or incoming is None:
            return False
        try:
            return incoming < current
        except TypeError:
            # naive и aware datetime не сравниваются, версия неизвестна
            return False

    async def _apply(self, fresh: OrderDocument, source: str) -> bool:
        """Заменить документ заказа, если ответ ещё актуален."""
        if self._closed:
            logger.debug("Discarding %s response for order %s: screen is closed", source, fresh.id)
            return False
        if self._is_stale(fresh):
            logger.info(
                "Discarding stale %s response for order %s (%s < %s)",
                source, fresh.id, fresh.version, self.order.version,
            )
            return False
        old_status = self.order.status
        self.order = fresh
        if old_status != fresh.status:
            logger.info("Order %s status: %s -> %s (%s)", fresh.id, old_status, fresh.status, source)
        await self._present(self.presenter.show_order(fresh))
        return True

    # --- операции ---

    async def load_order(self, refreshing: bool = False) -> bool:
        """Перечитать заказ. При ошибке предыдущий документ остаётся."""
        if self._closed:
            return False
        self._loads_in_flight += 1
        if refreshing:
            self.is_refreshing = True
        try:
            fresh = await self._call(self.client.find_record(self.order.id))
        except FleetbaseError as e:
            await self._report(e, "load")
            return False
        finally:
            self._loads_in_flight -= 1
            if refreshing:
                self.is_refreshing = False
        return await self._apply(fresh, "load")

    async def start(self, skip_dispatch: bool = False, assign: Optional[str] = None) -> bool:
        """
        Начать заказ.

        Если сервер отвечает "Order has not been dispatched", водителю
        предлагается подтвердить получение: подтверждение повторяет старт
        ровно один раз с skip_dispatch=True, отказ перечитывает заказ.
        """
        if self._reject_if_busy("start"):
            return False
        try:
            async with self._mutation_lock, self._loading("is_loading_action"):
                fresh = await self._call(
                    self.client.start_order(self.order.id, skip_dispatch=skip_dispatch, assign=assign)
                )
        except FleetbaseError as e:
            if not skip_dispatch and e.message.startswith(NOT_DISPATCHED_PREFIX):
                return await self._confirm_pickup(assign)
            await self._report(e, "start")
            return False
        return await self._apply(fresh, "start")

    async def _confirm_pickup(self, assign: Optional[str]) -> bool:
        confirmed = await self._ask(
            "Подтвердите получение заказа",
            "Нажмите «Подтвердить получение», когда заберёте заказ.",
            "Подтвердить получение",
            "Ещё нет",
        )
        if confirmed:
            return await self.start(skip_dispatch=True, assign=assign)
        await self.load_order()
        return False

    async def accept_adhoc(self) -> bool:
        """Принять adhoc-заказ (order ping): старт с назначением на себя."""
        if not self.order.is_order_ping:
            logger.warning("Order %s: accept ignored, order is not a ping", self.order.id)
            return False
        return await self.start(assign=self.driver.id)

    async def decline_adhoc(self) -> None:
        # Сервер об отказе не уведомляется, экран просто закрывается
        logger.info("Driver %s declined order ping %s", self.driver.id, self.order.id)
        await self._present(self.presenter.dismiss())

    async def update_activity(self) -> bool:
        """Запросить следующую активность для текущего назначения и предложить её водителю."""
        if self._reject_if_busy("update_activity"):
            return False
        self.action_sheet = ActionSheet.UPDATE_ACTIVITY
        destination = self.destination
        waypoint_id = destination.get("id") if destination else None
        try:
            async with self._mutation_lock, self._loading("is_loading_action"):
                offered = await self._call(self.client.get_next_activity(self.order.id, waypoint=waypoint_id))
        except FleetbaseError as e:
            await self._report(e, "next_activity")
            return False
        if self._closed:
            return False

        resolution = resolve_next_activity(self.order, waypoint_id, offered)
        if resolution.requires_dispatch_confirmation:
            return await self._confirm_dispatch()

        self.next_activity = resolution
        await self._present(self.presenter.choose_activity(self.order, resolution))
        return False

    async def _confirm_dispatch(self) -> bool:
        confirmed = await self._ask(
            "Внимание!",
            "Заказ ещё не отправлен. Вы уверены, что хотите продолжить?",
            "Да",
            "Отмена",
        )
        if not confirmed:
            await self.load_order()
            return False
        if self._reject_if_busy("update_activity"):
            return False
        try:
            async with self._mutation_lock, self._loading("is_loading_activity"):
                fresh = await self._call(self.client.update_activity(self.order.id, skip_dispatch=True))
        except FleetbaseError as e:
            await self._report(e, "update_activity")
            return False
        return await self._apply(fresh, "update_activity")

    async def open_destination_picker(self) -> bool:
        """Показать точки в работе для выбора/смены назначения."""
        if not (routing.can_set_destination(self.order) or routing.can_change_destination(self.order)):
            return False
        self.action_sheet = ActionSheet.CHANGE_DESTINATION
        await self._present(self.presenter.choose_waypoint(self.order, routing.waypoints_in_progress(self.order)))
        return True

    def _waypoint_selectable(self, waypoint_id: Optional[str]) -> bool:
        return bool(waypoint_id) and any(
            w.get("id") == waypoint_id for w in routing.waypoints_in_progress(self.order)
        )

    async def set_destination(self, waypoint_id: Optional[str]) -> bool:
        """
        Установить текущее назначение мульти-дроп заказа.
        Без вызова сервера, если назначение уже есть, заказ не в работе
        или точка не выбрана.
        """
        if not routing.can_set_destination(self.order) or not self._waypoint_selectable(waypoint_id):
            logger.debug("Order %s: set_destination(%s) is a no-op", self.order.id, waypoint_id)
            return False
        return await self._send_destination(waypoint_id, "set_destination")

    async def change_destination(self, waypoint_id: Optional[str]) -> bool:
        current = self.destination
        if (
            not routing.can_change_destination(self.order)
            or not self._waypoint_selectable(waypoint_id)
            or (current and current.get("id") == waypoint_id)
        ):
            logger.debug("Order %s: change_destination(%s) is a no-op", self.order.id, waypoint_id)
            return False
        return await self._send_destination(waypoint_id, "change_destination")

    async def _send_destination(self, waypoint_id: str, action: str) -> bool:
        if self._reject_if_busy(action):
            return False
        try:
            async with self._mutation_lock, self._loading("is_loading_action"):
                fresh = await self._call(self.client.set_destination(self.order.id, waypoint_id))
        except FleetbaseError as e:
            await self._report(e, action)
            return False
        finally:
            self.action_sheet = ActionSheet.UPDATE_ACTIVITY
        return await self._apply(fresh, action)

    async def send_activity_update(self, activity: Activity) -> bool:
        """
        Отправить выбранную активность.

        Если активность требует подтверждения доставки (require_pod), сервер
        не вызывается: управление уходит внешнему шагу фиксации с копией
        заказа и текущей точкой назначения.
        """
        if self._reject_if_busy("send_activity_update"):
            return False
        if activity.require_pod:
            self.next_activity = None
            destination = self.destination
            await self._present(
                self.presenter.request_proof(
                    activity, self.order.serialize(), copy.deepcopy(destination) if destination else None
                )
            )
            return False
        try:
            async with self._mutation_lock, self._loading("is_loading_activity"):
                fresh = await self._call(self.client.update_activity(self.order.id, activity=activity.to_dict()))
        except FleetbaseError as e:
            await self._report(e, "update_activity")
            return False
        finally:
            self.next_activity = None
        return await self._apply(fresh, "update_activity")

    async def complete_order(self) -> bool:
        if self._reject_if_busy("complete"):
            return False
        try:
            async with self._mutation_lock, self._loading("is_loading_activity"):
                fresh = await self._call(self.client.complete_order(self.order.id))
        except FleetbaseError as e:
            await self._report(e, "complete")
            return False
        finally:
            self.next_activity = None
        return await self._apply(fresh, "complete")

    async def track_location(self, latitude: float, longitude: float) -> bool:
        """Отправить геопозицию водителя. Ошибки только логируются."""
        try:
            await self._call(self.driver.track(latitude, longitude))
        except FleetbaseError as e:
            logger.warning("Driver %s location update failed: %s", self.driver.id, e.message)
            return False
        return True

    def close(self) -> None:
        """Экран закрыт: все ответы, пришедшие позже, отбрасываются."""
        if self._closed:
            return
        self._closed = True
        self.next_activity = None
        logger.debug("Order %s controller closed", self.order.id)
