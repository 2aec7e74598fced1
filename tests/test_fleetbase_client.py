import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import build_order
from services.fleetbase import DriverSession, FleetbaseClient, FleetbaseError, extract_error_message
from services.order_controller import OrderActionController
from services.order_document import OrderDocument


@pytest.fixture
async def api():
    """Fleetbase API на локальном aiohttp-сервере; requests: что он получил."""
    requests = []
    routes = web.RouteTableDef()

    async def record(request):
        body = await request.json() if request.can_read_body else None
        requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "json": body,
                "auth": request.headers.get("Authorization"),
            }
        )

    @routes.get("/v1/orders/{order_id}")
    async def find(request):
        await record(request)
        if request.match_info["order_id"] == "order_missing":
            return web.json_response({"errors": ["Order not found."]}, status=404)
        return web.json_response(build_order(id=request.match_info["order_id"]))

    @routes.get("/v1/orders")
    async def query(request):
        await record(request)
        return web.json_response({"orders": [build_order(), "junk"]})

    @routes.post("/v1/orders/{order_id}/start")
    async def start(request):
        await record(request)
        body = requests[-1]["json"]
        if not body.get("skipDispatch"):
            return web.json_response({"error": "Order has not been dispatched yet!"}, status=400)
        return web.json_response(build_order(status="started", started_at="2026-10-19T10:05:00Z"))

    @routes.post("/v1/orders/{order_id}/update-activity")
    async def update_activity(request):
        await record(request)
        return web.json_response(build_order(status="enroute"))

    @routes.post("/v1/orders/{order_id}/set-destination/{waypoint_id}")
    async def set_destination(request):
        await record(request)
        payload = {"current_waypoint": request.match_info["waypoint_id"], "waypoints": []}
        return web.json_response(build_order(payload=payload))

    @routes.post("/v1/orders/{order_id}/complete")
    async def complete(request):
        await record(request)
        return web.Response(text="Internal Server Error", status=500)

    @routes.get("/v1/orders/{order_id}/next-activity")
    async def next_activity(request):
        await record(request)
        if request.match_info["order_id"] == "order_empty":
            return web.Response(text="")
        return web.json_response([{"code": "enroute"}])

    @routes.post("/v1/drivers/{driver_id}/track")
    async def track(request):
        await record(request)
        return web.json_response({"id": request.match_info["driver_id"]})

    @routes.get("/v1/drivers/{driver_id}")
    async def get_driver(request):
        await record(request)
        return web.json_response({"id": request.match_info["driver_id"], "name": "Test Driver"})

    app = web.Application()
    app.add_routes(routes)
    server = TestServer(app)
    await server.start_server()
    client = FleetbaseClient(base_url=str(server.make_url("/")), api_key="flb_test", timeout=5)
    yield client, requests
    await server.close()


async def test_find_record(api):
    client, requests = api
    order = await client.find_record("order_abc123")
    assert order.id == "order_abc123"
    assert requests[0]["path"] == "/v1/orders/order_abc123"
    assert requests[0]["auth"] == "Bearer flb_test"


async def test_server_error_message_is_surfaced(api):
    client, _ = api
    with pytest.raises(FleetbaseError) as exc_info:
        await client.find_record("order_missing")
    assert exc_info.value.message == "Order not found."
    assert exc_info.value.status == 404


async def test_start_sends_skip_dispatch_and_assign(api):
    client, requests = api
    with pytest.raises(FleetbaseError, match="has not been dispatched"):
        await client.start_order("order_abc123")
    order = await client.start_order("order_abc123", skip_dispatch=True, assign="driver_1")

    assert order.is_in_progress
    assert requests[0]["json"] == {}
    assert requests[1]["json"] == {"skipDispatch": True, "assign": "driver_1"}


async def test_update_activity_body(api):
    client, requests = api
    await client.update_activity("order_abc123", activity={"code": "enroute"})
    await client.update_activity("order_abc123", skip_dispatch=True)
    assert requests[0]["json"] == {"activity": {"code": "enroute"}}
    assert requests[1]["json"] == {"skipDispatch": True}


async def test_set_destination(api):
    client, requests = api
    order = await client.set_destination("order_abc123", "wp_2")
    assert order.get_attribute("payload.current_waypoint") == "wp_2"
    assert requests[0]["path"] == "/v1/orders/order_abc123/set-destination/wp_2"


async def test_plain_text_error(api):
    client, _ = api
    with pytest.raises(FleetbaseError) as exc_info:
        await client.complete_order("order_abc123")
    assert exc_info.value.message == "Internal Server Error"
    assert exc_info.value.status == 500


async def test_next_activity(api):
    client, requests = api
    assert await client.get_next_activity("order_abc123", waypoint="wp_1") == [{"code": "enroute"}]
    assert requests[0]["query"] == {"waypoint": "wp_1"}
    assert await client.get_next_activity("order_empty") is None
    assert requests[1]["query"] == {}


async def test_query_orders_skips_malformed_items(api):
    client, requests = api
    orders = await client.query_orders({"driver": "driver_1", "on": "19-10-2026", "status": None})
    assert [o.id for o in orders] == ["order_abc123"]
    assert requests[0]["query"] == {"driver": "driver_1", "on": "19-10-2026"}


async def test_driver_session_tracks_with_own_id(api):
    client, requests = api
    driver = DriverSession(id="driver_1", name="Test Driver", client=client.with_token("driver_token"))
    assert await driver.track(41.3, 69.2) == {"id": "driver_1"}
    assert requests[0]["json"] == {"latitude": 41.3, "longitude": 69.2}
    assert requests[0]["auth"] == "Bearer driver_token"
    assert (await client.get_driver("driver_1"))["name"] == "Test Driver"


async def test_unreachable_server():
    client = FleetbaseClient(base_url="http://127.0.0.1:9", api_key="", timeout=2)
    with pytest.raises(FleetbaseError, match="Сервер недоступен"):
        await client.find_record("order_abc123")


@pytest.fixture
async def broken_api():
    """Сервер, который отвечает слишком долго или присылает битый JSON."""
    routes = web.RouteTableDef()

    @routes.get("/v1/orders/order_slow")
    async def slow(request):
        await asyncio.sleep(2)
        return web.json_response(build_order())

    @routes.get("/v1/orders/{order_id}")
    async def garbled(request):
        return web.Response(text="not json", content_type="application/json")

    app = web.Application()
    app.add_routes(routes)
    server = TestServer(app)
    await server.start_server()
    yield FleetbaseClient(base_url=str(server.make_url("/")), api_key="flb_test", timeout=0.2)
    await server.close()


async def test_timeout_becomes_fleetbase_error(broken_api):
    with pytest.raises(FleetbaseError, match="не ответил вовремя"):
        await broken_api.find_record("order_slow")


async def test_malformed_json_becomes_fleetbase_error(broken_api):
    with pytest.raises(FleetbaseError, match="Некорректный ответ"):
        await broken_api.find_record("order_abc123")


async def test_controller_alerts_on_malformed_json(broken_api, driver, presenter):
    ctrl = OrderActionController(
        OrderDocument(build_order()), broken_api, driver, presenter, timeout=2.0, navigation_enabled=False
    )

    assert not await ctrl.load_order()
    assert ctrl.order.status == "created"
    assert presenter.alerts == [("Ошибка", "Некорректный ответ сервера")]
    assert not ctrl.is_loading


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"errors": ["first", "second"]}, "first"),
        ({"errors": "flat"}, "flat"),
        ({"error": "single"}, "single"),
        ({"message": "msg"}, "msg"),
        ("  text  ", "text"),
        ({}, "fallback"),
        (None, "fallback"),
    ],
)
def test_extract_error_message(data, expected):
    assert extract_error_message(data, "fallback") == expected
