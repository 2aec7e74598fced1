import os

# config.py читает окружение при импорте
os.environ.setdefault("BOT_TOKEN", "123456:TEST-TOKEN")
os.environ.setdefault("DB_DIALECT", "sqlite")
os.environ.setdefault("SQLITE_PATH", "test_navigator.sqlite3")
os.environ.setdefault("FLEETBASE_API_URL", "http://fleetbase.test")
os.environ.setdefault("ACTION_TIMEOUT", "5")
os.environ.setdefault("NOTIFICATION_RELAY_ENABLED", "true")

import asyncio
import copy
from collections import defaultdict
from types import SimpleNamespace

import pytest

from services.fleetbase import DriverSession
from services.order_document import OrderDocument


def point(lon, lat):
    return {"type": "Point", "coordinates": [lon, lat]}


def build_order(**overrides):
    """Заказ в формате Fleetbase; overrides заменяют поля верхнего уровня."""
    data = {
        "id": "order_abc123",
        "status": "created",
        "adhoc": False,
        "driver_assigned": {"id": "driver_1"},
        "dispatched_at": None,
        "started_at": None,
        "updated_at": "2026-10-19T10:00:00+00:00",
        "meta": {"currency": "USD"},
        "payload": {
            "pickup": {"id": "place_pickup", "address": "1 Pickup St", "location": point(69.24, 41.30)},
            "dropoff": {"id": "place_dropoff", "address": "9 Dropoff Ave", "location": point(69.28, 41.31)},
            "waypoints": [],
            "entities": [],
            "current_waypoint": None,
        },
    }
    data.update(copy.deepcopy(overrides))
    return data


def build_multi_drop(current_waypoint=None, **overrides):
    """Мульти-дроп заказ в работе с тремя точками, третья уже выполнена."""
    payload = {
        "pickup": None,
        "dropoff": None,
        "current_waypoint": current_waypoint,
        "waypoints": [
            {"id": "wp_1", "address": "Stop One", "location": point(69.20, 41.29),
             "tracking_number": {"status_code": "created"}},
            {"id": "wp_2", "address": "Stop Two", "location": point(69.21, 41.28),
             "tracking_number": {"status_code": "enroute"}},
            {"id": "wp_3", "address": "Stop Three", "location": point(69.22, 41.27),
             "tracking_number": {"status_code": "COMPLETED"}},
        ],
        "entities": [
            {"id": "ent_1", "name": "Box A", "price": 1000, "destination": "wp_1"},
            {"id": "ent_2", "name": "Box B", "price": 500, "destination": "wp_2"},
        ],
    }
    data = build_order(
        status="started",
        dispatched_at="2026-10-19T09:00:00+00:00",
        started_at="2026-10-19T09:30:00+00:00",
        payload=payload,
    )
    data.update(copy.deepcopy(overrides))
    return data


class FakeClient:
    """
    Подмена FleetbaseClient. Ответы ставятся в очередь по имени метода:
    dict (документ заказа), Exception (выбрасывается) или asyncio.Future
    (ожидается, затем обрабатывается его результат).
    """

    def __init__(self):
        self.calls = []
        self.results = defaultdict(list)

    def queue(self, name, *results):
        self.results[name].extend(results)

    def names(self):
        return [name for name, _, _ in self.calls]

    def calls_of(self, name):
        return [(args, kwargs) for n, args, kwargs in self.calls if n == name]

    def with_token(self, token):
        return self

    async def _respond(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if not self.results[name]:
            raise AssertionError(f"unexpected call: {name}{args}")
        result = self.results[name].pop(0)
        if isinstance(result, asyncio.Future):
            result = await result
        if isinstance(result, Exception):
            raise result
        if isinstance(result, dict) and name not in ("get_next_activity", "track_driver", "get_driver"):
            return OrderDocument(result)
        return result

    async def find_record(self, order_id):
        return await self._respond("find_record", order_id)

    async def query_orders(self, params):
        return await self._respond("query_orders", params)

    async def start_order(self, order_id, skip_dispatch=False, assign=None):
        return await self._respond("start_order", order_id, skip_dispatch=skip_dispatch, assign=assign)

    async def update_activity(self, order_id, activity=None, skip_dispatch=False):
        return await self._respond("update_activity", order_id, activity=activity, skip_dispatch=skip_dispatch)

    async def set_destination(self, order_id, waypoint_id):
        return await self._respond("set_destination", order_id, waypoint_id)

    async def complete_order(self, order_id):
        return await self._respond("complete_order", order_id)

    async def get_next_activity(self, order_id, waypoint=None):
        return await self._respond("get_next_activity", order_id, waypoint=waypoint)

    async def track_driver(self, driver_id, latitude, longitude):
        return await self._respond("track_driver", driver_id, latitude, longitude)

    async def get_driver(self, driver_id):
        return await self._respond("get_driver", driver_id)


class FakePresenter:
    def __init__(self):
        self.shown = []
        self.alerts = []
        self.confirmations = []
        self.confirm_answers = []
        self.activity_choices = []
        self.waypoint_choices = []
        self.proofs = []
        self.dismissed = 0

    async def show_order(self, order):
        self.shown.append(order)

    async def alert(self, title, message):
        self.alerts.append((title, message))

    async def confirm(self, title, message, accept_label, reject_label):
        self.confirmations.append((title, message, accept_label, reject_label))
        return self.confirm_answers.pop(0) if self.confirm_answers else False

    async def choose_activity(self, order, resolution):
        self.activity_choices.append(resolution)

    async def choose_waypoint(self, order, waypoints):
        self.waypoint_choices.append(waypoints)

    async def request_proof(self, activity, order_data, waypoint):
        self.proofs.append((activity, order_data, waypoint))

    async def dismiss(self):
        self.dismissed += 1


class FakeBot:
    """Минимальный Bot: запоминает отправленные и отредактированные сообщения."""

    def __init__(self):
        self.sent = []
        self.edited = []
        self._next_id = 100

    async def send_message(self, chat_id, text, reply_markup=None, parse_mode=None, **kwargs):
        self._next_id += 1
        self.sent.append(SimpleNamespace(chat_id=chat_id, text=text, reply_markup=reply_markup))
        return SimpleNamespace(message_id=self._next_id, chat=SimpleNamespace(id=chat_id))

    async def edit_message_text(self, text, chat_id=None, message_id=None, reply_markup=None, parse_mode=None, **kwargs):
        self.edited.append(SimpleNamespace(chat_id=chat_id, message_id=message_id, text=text, reply_markup=reply_markup))
        return True


class FakeRealtime:
    """Каналы на asyncio.Queue вместо websocket."""

    def __init__(self):
        self.queues = {}
        self.released = []

    def channel(self, name):
        return self.queues.setdefault(name, asyncio.Queue())

    async def subscribe(self, channel):
        queue = self.channel(channel)
        try:
            while True:
                yield await queue.get()
        finally:
            self.released.append(channel)


async def settle(rounds: int = 10) -> None:
    """Дать выполниться фоновым задачам."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def presenter():
    return FakePresenter()


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def driver(client):
    return DriverSession(id="driver_1", name="Test Driver", client=client)


@pytest.fixture
def make_controller(client, driver, presenter):
    from services.order_controller import OrderActionController

    def _make(data=None, timeout=2.0, navigation_enabled=False):
        order = OrderDocument(data if data is not None else build_order())
        return OrderActionController(
            order, client, driver, presenter, timeout=timeout, navigation_enabled=navigation_enabled
        )

    return _make
