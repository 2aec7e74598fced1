import copy

import pytest

from conftest import build_multi_drop, build_order
from services.activity import Activity, ResolutionKind, resolve_next_activity
from services.order_document import OrderDocument

ENROUTE = {"code": "enroute", "status": "Driver en route", "details": "Driver is on the way"}
ARRIVED = {"code": "arrived", "status": "Driver arrived"}
DISPATCHED = {"code": "dispatched", "status": "Order dispatched"}
COMPLETED = {"code": "completed", "status": "Order completed", "require_pod": True}


@pytest.fixture
def order():
    return OrderDocument(build_order())


def test_order_is_required():
    with pytest.raises(ValueError):
        resolve_next_activity(None, None, [ENROUTE])


@pytest.mark.parametrize("offered", [None, [], {}, "", [None, "junk", {"status": "no code"}]])
def test_nothing_offered(order, offered):
    resolution = resolve_next_activity(order, None, offered)
    assert resolution.kind == ResolutionKind.NONE
    assert resolution.is_empty


def test_dispatched_activity_requires_confirmation(order):
    resolution = resolve_next_activity(order, None, [ENROUTE, DISPATCHED])
    assert resolution.kind == ResolutionKind.CONFIRM_DISPATCH
    assert resolution.requires_dispatch_confirmation
    assert [a.code for a in resolution.activities] == ["dispatched"]


def test_dispatched_activity_on_dispatched_order_is_a_choice():
    order = OrderDocument(build_order(status="dispatched"))
    resolution = resolve_next_activity(order, None, DISPATCHED)
    assert resolution.kind == ResolutionKind.CHOICES
    assert not resolution.requires_dispatch_confirmation


def test_single_terminal_activity_completes(order):
    resolution = resolve_next_activity(order, None, COMPLETED)
    assert resolution.kind == ResolutionKind.COMPLETE
    assert resolution.activities[0].require_pod

    flagged = resolve_next_activity(order, None, [{"code": "delivered", "complete": True}])
    assert flagged.kind == ResolutionKind.COMPLETE


def test_several_activities_keep_backend_order(order):
    resolution = resolve_next_activity(order, None, [ARRIVED, "junk", ENROUTE, COMPLETED])
    assert resolution.kind == ResolutionKind.CHOICES
    assert [a.code for a in resolution.activities] == ["arrived", "enroute", "completed"]


def test_single_non_terminal_activity_is_a_choice(order):
    resolution = resolve_next_activity(order, None, ENROUTE)
    assert resolution.kind == ResolutionKind.CHOICES
    assert len(resolution.activities) == 1


def test_waypoint_kept_only_for_known_stops():
    order = OrderDocument(build_multi_drop(current_waypoint="wp_1"))
    assert resolve_next_activity(order, "wp_1", ENROUTE).waypoint_id == "wp_1"
    assert resolve_next_activity(order, "wp_unknown", ENROUTE).waypoint_id is None
    assert resolve_next_activity(order, None, ENROUTE).waypoint_id is None


def test_input_is_not_mutated(order):
    offered = [copy.deepcopy(ENROUTE), copy.deepcopy(ARRIVED)]
    snapshot = copy.deepcopy(offered)
    before = order.serialize()
    resolve_next_activity(order, None, offered)
    assert offered == snapshot
    assert order.serialize() == before


def test_activity_round_trips_backend_payload():
    payload = {"code": "arrived", "status": "Driver arrived", "pod_method": "photo", "require_pod": "1"}
    activity = Activity.from_dict(payload)
    assert activity.require_pod is True
    assert activity.to_dict() == payload
    assert activity.to_dict() is not payload
    assert not activity.is_terminal
