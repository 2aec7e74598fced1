import asyncio

from conftest import build_multi_drop, build_order, settle
from services.activity import Activity, ResolutionKind
from services.fleetbase import FleetbaseError
from services.order_controller import ActionSheet

LATER = "2026-10-19T11:00:00+00:00"
EARLIER = "2026-10-19T09:00:00+00:00"
ENROUTE = {"code": "enroute", "status": "Driver en route"}
ARRIVED = {"code": "arrived", "status": "Driver arrived"}


class TestLoad:
    async def test_load_replaces_document(self, make_controller, client, presenter):
        ctrl = make_controller()
        client.queue("find_record", build_order(status="dispatched", updated_at=LATER))

        assert await ctrl.load_order()
        assert ctrl.order.status == "dispatched"
        assert [o.status for o in presenter.shown] == ["dispatched"]
        assert not ctrl.is_loading

    async def test_load_failure_keeps_document(self, make_controller, client, presenter):
        ctrl = make_controller()
        client.queue("find_record", FleetbaseError("boom", 500))

        assert not await ctrl.load_order()
        assert ctrl.order.status == "created"
        assert presenter.alerts == [("Ошибка", "boom")]

    async def test_refreshing_flag_spans_the_request(self, make_controller, client):
        ctrl = make_controller()
        pending = asyncio.get_running_loop().create_future()
        client.queue("find_record", pending)

        task = asyncio.create_task(ctrl.load_order(refreshing=True))
        await settle()
        assert ctrl.is_refreshing
        assert ctrl.is_loading

        pending.set_result(build_order())
        assert await task
        assert not ctrl.is_refreshing
        assert not ctrl.is_loading

    async def test_stale_response_is_discarded(self, make_controller, client, presenter):
        ctrl = make_controller()
        client.queue("find_record", build_order(status="dispatched", updated_at=EARLIER))

        assert not await ctrl.load_order()
        assert ctrl.order.status == "created"
        assert presenter.shown == []

    async def test_last_response_wins(self, make_controller, client):
        ctrl = make_controller()
        loop = asyncio.get_running_loop()
        first, second = loop.create_future(), loop.create_future()
        client.queue("find_record", first, second)

        t1 = asyncio.create_task(ctrl.load_order())
        t2 = asyncio.create_task(ctrl.load_order())
        await settle()

        second.set_result(build_order(status="dispatched"))
        assert await t2
        first.set_result(build_order(status="started", started_at=EARLIER))
        assert await t1
        assert ctrl.order.status == "started"

    async def test_older_response_arriving_last_is_discarded(self, make_controller, client, presenter):
        ctrl = make_controller()
        loop = asyncio.get_running_loop()
        first, second = loop.create_future(), loop.create_future()
        client.queue("find_record", first, second)

        t1 = asyncio.create_task(ctrl.load_order())
        t2 = asyncio.create_task(ctrl.load_order())
        await settle()

        second.set_result(build_order(status="dispatched", updated_at=LATER))
        assert await t2
        first.set_result(build_order(status="started", started_at=EARLIER, updated_at=EARLIER))
        assert not await t1

        assert ctrl.order.status == "dispatched"
        assert [o.status for o in presenter.shown] == ["dispatched"]
        assert not ctrl.is_loading

    async def test_response_after_close_is_discarded(self, make_controller, client, presenter):
        ctrl = make_controller()
        pending = asyncio.get_running_loop().create_future()
        client.queue("find_record", pending)

        task = asyncio.create_task(ctrl.load_order())
        await settle()
        ctrl.close()
        pending.set_result(build_order(status="dispatched", updated_at=LATER))

        assert not await task
        assert ctrl.order.status == "created"
        assert presenter.shown == []

    async def test_closed_controller_ignores_actions(self, make_controller, client):
        ctrl = make_controller()
        ctrl.close()
        assert not await ctrl.start()
        assert not await ctrl.load_order()
        assert client.calls == []


class TestStart:
    async def test_start(self, make_controller, client):
        ctrl = make_controller()
        client.queue("start_order", build_order(status="started", started_at=LATER, updated_at=LATER))

        assert await ctrl.start()
        assert ctrl.order.is_in_progress
        assert client.calls_of("start_order") == [(("order_abc123",), {"skip_dispatch": False, "assign": None})]
        assert not ctrl.is_loading_action

    async def test_not_dispatched_confirm_retries_with_skip_dispatch(self, make_controller, client, presenter):
        ctrl = make_controller()
        presenter.confirm_answers = [True]
        client.queue(
            "start_order",
            FleetbaseError("Order has not been dispatched yet!", 400),
            build_order(status="started", started_at=LATER, updated_at=LATER),
        )

        assert await ctrl.start()
        assert [kw["skip_dispatch"] for _, kw in client.calls_of("start_order")] == [False, True]
        assert len(presenter.confirmations) == 1
        assert presenter.alerts == []

    async def test_not_dispatched_retry_happens_once(self, make_controller, client, presenter):
        ctrl = make_controller()
        presenter.confirm_answers = [True, True]
        error = FleetbaseError("Order has not been dispatched yet!", 400)
        client.queue("start_order", error, error)

        assert not await ctrl.start()
        assert len(client.calls_of("start_order")) == 2
        assert len(presenter.confirmations) == 1
        assert len(presenter.alerts) == 1

    async def test_not_dispatched_rejection_reloads(self, make_controller, client, presenter):
        ctrl = make_controller()
        presenter.confirm_answers = [False]
        client.queue("start_order", FleetbaseError("Order has not been dispatched yet!", 400))
        client.queue("find_record", build_order())

        assert not await ctrl.start()
        assert client.names() == ["start_order", "find_record"]

    async def test_other_errors_alert(self, make_controller, client, presenter):
        ctrl = make_controller()
        client.queue("start_order", FleetbaseError("Driver is offline", 422))

        assert not await ctrl.start()
        assert presenter.alerts == [("Ошибка", "Driver is offline")]
        assert presenter.confirmations == []

    async def test_timeout_is_reported(self, make_controller, client, presenter):
        ctrl = make_controller(timeout=0.05)
        client.queue("start_order", asyncio.get_running_loop().create_future())

        assert not await ctrl.start()
        assert "не ответил вовремя" in presenter.alerts[0][1]
        assert not ctrl.is_busy


class TestAdhoc:
    async def test_accept_assigns_current_driver(self, make_controller, client):
        ctrl = make_controller(build_order(adhoc=True, driver_assigned=None))
        client.queue("start_order", build_order(status="started", started_at=LATER, adhoc=True))

        assert await ctrl.accept_adhoc()
        assert client.calls_of("start_order")[0][1]["assign"] == "driver_1"

    async def test_accept_ignored_for_regular_order(self, make_controller, client):
        ctrl = make_controller()
        assert not await ctrl.accept_adhoc()
        assert client.calls == []

    async def test_decline_only_dismisses(self, make_controller, client, presenter):
        ctrl = make_controller(build_order(adhoc=True, driver_assigned=None))
        await ctrl.decline_adhoc()
        assert presenter.dismissed == 1
        assert client.calls == []


class TestActivity:
    async def test_choices_are_offered(self, make_controller, client, presenter):
        ctrl = make_controller(build_multi_drop(current_waypoint="wp_1"))
        client.queue("get_next_activity", [ENROUTE, ARRIVED])

        assert not await ctrl.update_activity()
        assert client.calls_of("get_next_activity")[0][1] == {"waypoint": "wp_1"}
        (resolution,) = presenter.activity_choices
        assert resolution.kind == ResolutionKind.CHOICES
        assert ctrl.next_activity is resolution
        assert ctrl.action_sheet == ActionSheet.UPDATE_ACTIVITY

    async def test_dispatch_confirmation_updates_with_skip(self, make_controller, client, presenter):
        ctrl = make_controller()
        presenter.confirm_answers = [True]
        client.queue("get_next_activity", {"code": "dispatched", "status": "Dispatched"})
        client.queue("update_activity", build_order(status="dispatched", updated_at=LATER))

        assert await ctrl.update_activity()
        assert client.calls_of("update_activity") == [
            (("order_abc123",), {"activity": None, "skip_dispatch": True})
        ]
        assert presenter.activity_choices == []

    async def test_dispatch_rejection_reloads(self, make_controller, client, presenter):
        ctrl = make_controller()
        presenter.confirm_answers = [False]
        client.queue("get_next_activity", {"code": "dispatched"})
        client.queue("find_record", build_order())

        assert not await ctrl.update_activity()
        assert client.names() == ["get_next_activity", "find_record"]

    async def test_send_activity(self, make_controller, client):
        ctrl = make_controller(build_multi_drop(current_waypoint="wp_1"))
        client.queue("update_activity", build_multi_drop(current_waypoint="wp_1", updated_at=LATER))

        assert await ctrl.send_activity_update(Activity.from_dict(ENROUTE))
        assert client.calls_of("update_activity")[0][1] == {"activity": ENROUTE, "skip_dispatch": False}
        assert ctrl.next_activity is None

    async def test_proof_of_delivery_skips_backend(self, make_controller, client, presenter):
        ctrl = make_controller(build_multi_drop(current_waypoint="wp_2"))
        activity = Activity.from_dict({"code": "completed", "require_pod": True, "pod_method": "photo"})

        assert not await ctrl.send_activity_update(activity)
        assert client.calls == []
        ((sent, order_data, waypoint),) = presenter.proofs
        assert sent is activity
        assert order_data == ctrl.order.serialize()
        assert waypoint["id"] == "wp_2"

        order_data["status"] = "tampered"
        waypoint["address"] = "tampered"
        assert ctrl.order.status == "started"
        assert ctrl.destination["address"] == "Stop Two"

    async def test_complete(self, make_controller, client):
        ctrl = make_controller(build_multi_drop(current_waypoint="wp_1"))
        client.queue("complete_order", build_order(status="completed", updated_at=LATER))

        assert await ctrl.complete_order()
        assert ctrl.order.is_completed


class TestDestination:
    async def test_picker_lists_waypoints_in_progress(self, make_controller, presenter):
        ctrl = make_controller(build_multi_drop())
        assert await ctrl.open_destination_picker()
        assert [w["id"] for w in presenter.waypoint_choices[0]] == ["wp_1", "wp_2"]
        assert ctrl.action_sheet == ActionSheet.CHANGE_DESTINATION

    async def test_picker_unavailable_for_single_drop(self, make_controller, presenter):
        ctrl = make_controller(build_order(status="started", started_at=EARLIER))
        assert not await ctrl.open_destination_picker()
        assert presenter.waypoint_choices == []

    async def test_set_destination(self, make_controller, client):
        ctrl = make_controller(build_multi_drop())
        client.queue("set_destination", build_multi_drop(current_waypoint="wp_2", updated_at=LATER))

        assert await ctrl.set_destination("wp_2")
        assert client.calls_of("set_destination") == [(("order_abc123", "wp_2"), {})]
        assert ctrl.destination["id"] == "wp_2"
        assert ctrl.action_sheet == ActionSheet.UPDATE_ACTIVITY

    async def test_set_destination_no_ops(self, make_controller, client):
        ctrl = make_controller(build_multi_drop())
        assert not await ctrl.set_destination(None)
        assert not await ctrl.set_destination("wp_3")
        assert not await ctrl.set_destination("wp_missing")

        chosen = make_controller(build_multi_drop(current_waypoint="wp_1"))
        assert not await chosen.set_destination("wp_2")

        not_started = make_controller(build_multi_drop(status="created", started_at=None, dispatched_at=None))
        assert not await not_started.set_destination("wp_1")
        assert client.calls == []

    async def test_change_destination(self, make_controller, client):
        ctrl = make_controller(build_multi_drop(current_waypoint="wp_1"))
        assert not await ctrl.change_destination("wp_1")
        assert client.calls == []

        client.queue("set_destination", build_multi_drop(current_waypoint="wp_2", updated_at=LATER))
        assert await ctrl.change_destination("wp_2")
        assert ctrl.destination["id"] == "wp_2"


class TestConcurrency:
    async def test_second_mutation_is_rejected_while_busy(self, make_controller, client):
        ctrl = make_controller()
        pending = asyncio.get_running_loop().create_future()
        client.queue("start_order", pending)

        task = asyncio.create_task(ctrl.start())
        await settle()
        assert ctrl.is_busy
        assert ctrl.is_loading_action

        assert not await ctrl.complete_order()
        assert not await ctrl.update_activity()
        assert client.names() == ["start_order"]

        pending.set_result(build_order(status="started", started_at=LATER, updated_at=LATER))
        assert await task
        assert not ctrl.is_busy

    async def test_reads_are_not_blocked_by_mutation(self, make_controller, client):
        ctrl = make_controller()
        pending = asyncio.get_running_loop().create_future()
        client.queue("start_order", pending)
        client.queue("find_record", build_order(status="dispatched"))

        task = asyncio.create_task(ctrl.start())
        await settle()
        assert await ctrl.load_order()

        pending.set_result(build_order(status="started", started_at=LATER, updated_at=LATER))
        assert await task
        assert ctrl.order.status == "started"


class TestTracking:
    async def test_track_location(self, make_controller, client):
        ctrl = make_controller()
        client.queue("track_driver", {})
        assert await ctrl.track_location(41.3, 69.2)
        assert client.calls_of("track_driver") == [(("driver_1", 41.3, 69.2), {})]

    async def test_track_failure_is_silent(self, make_controller, client, presenter):
        ctrl = make_controller()
        client.queue("track_driver", FleetbaseError("offline"))
        assert not await ctrl.track_location(41.3, 69.2)
        assert presenter.alerts == []


async def test_presenter_failure_does_not_escape(make_controller, client, presenter):
    async def broken(order):
        raise RuntimeError("telegram down")

    presenter.show_order = broken
    ctrl = make_controller()
    client.queue("find_record", build_order(status="dispatched"))
    assert await ctrl.load_order()
    assert ctrl.order.status == "dispatched"
