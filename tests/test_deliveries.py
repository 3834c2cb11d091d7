import pytest

from deliveries.driver_flow import (
    DeliveryStateException,
    DriverDeliveryFlow,
    can_transition_delivery,
    next_delivery_status,
)
from deliveries.snapshot import DeliverySnapshotStore
from fakes import FakeBackendClient, FakeTransport
from orders.models import Delivery
from realtime.events import ChangeEvent, EventType

NOW = "2024-05-01T12:00:00+00:00"


def event(event_type, new=None, old=None, table="deliveries"):
    return ChangeEvent(EventType(event_type), table, new or {}, old or {})


@pytest.fixture
def client():
    return FakeBackendClient({
        "deliveries": [
            {"id": "d-1", "order_id": "o-1", "driver_id": "drv-1", "status": "assigned",
             "created_at": "2024-05-01T10:00:00+00:00"},
            {"id": "d-2", "order_id": "o-2", "driver_id": None, "status": "available",
             "created_at": "2024-05-01T11:00:00+00:00"},
            {"id": "d-3", "order_id": "o-3", "driver_id": None, "status": "available",
             "created_at": "2024-05-01T09:00:00+00:00"},
            {"id": "d-4", "order_id": "o-4", "driver_id": "drv-1", "status": "delivered",
             "created_at": "2024-04-30T09:00:00+00:00"},
        ],
        "orders": [
            {"id": "o-1", "status": "on_the_way"},
            {"id": "o-2", "status": "ready"},
        ],
        "delivery_drivers": [{"id": "drv-1", "is_available": True}],
    })


@pytest.fixture
def flow(client):
    flow = DriverDeliveryFlow(client, FakeTransport(), driver_id="drv-1",
                              include_available=True, clock=lambda: NOW)
    flow.start()
    return flow


# ---------------- transitions ----------------

def test_delivery_transitions():
    assert can_transition_delivery("available", "assigned")
    assert can_transition_delivery("assigned", "on_the_way")
    assert can_transition_delivery("picked_up", "cancelled")
    assert not can_transition_delivery("on_the_way", "assigned")
    assert not can_transition_delivery("delivered", "cancelled")
    assert not can_transition_delivery("assigned", "lost")
    assert next_delivery_status("picked_up") == "on_the_way"
    with pytest.raises(DeliveryStateException):
        next_delivery_status("delivered")


# ---------------- snapshot ----------------

def test_snapshot_mine_rules():
    store = DeliverySnapshotStore(driver_id="drv-1")
    store.replace_mine([Delivery.from_row({"id": "d-1", "driver_id": "drv-1", "status": "assigned"})])

    store.apply_event(event("INSERT", {"id": "d-5", "driver_id": "drv-2"}))
    assert [d.id for d in store.mine] == ["d-1"]

    store.apply_event(event("UPDATE", {"id": "d-6", "driver_id": "drv-1", "status": "assigned"}))
    assert [d.id for d in store.mine] == ["d-6", "d-1"]

    store.apply_event(event("UPDATE", {"id": "d-1", "driver_id": "drv-1", "status": "picked_up"}))
    assert store.find("d-1").status == "picked_up"

    # reassigned away
    store.apply_event(event("UPDATE", {"id": "d-6", "driver_id": "drv-9", "status": "assigned"}))
    assert [d.id for d in store.mine] == ["d-1"]

    store.apply_event(event("DELETE", old={"id": "d-1"}))
    assert store.mine == []


def test_snapshot_available_rules():
    store = DeliverySnapshotStore(include_available=True)
    store.apply_event(event("INSERT", {"id": "d-7", "status": "available"}))
    store.apply_event(event("INSERT", {"id": "d-8", "status": "assigned"}))
    assert [d.id for d in store.available] == ["d-7"]

    store.apply_event(event("UPDATE", {"id": "d-7", "status": "assigned", "driver_id": "drv-2"}))
    assert store.available == []


def test_snapshot_ignores_other_tables():
    store = DeliverySnapshotStore(driver_id="drv-1", include_available=True)
    store.apply_event(event("INSERT", {"id": "o-1", "driver_id": "drv-1", "status": "available"}, table="orders"))
    assert store.mine == [] and store.available == []


# ---------------- flow ----------------

def test_load_splits_mine_and_available(flow):
    assert [d.id for d in flow.deliveries] == ["d-1"]
    assert [d.id for d in flow.available_deliveries] == ["d-3", "d-2"]
    assert flow.transport.configs["realtime:deliveries-changes"] == [
        {"event": "*", "schema": "public", "table": "deliveries"},
    ]


def test_load_failure_sets_error(client):
    client.fail("fetch", "deliveries")
    flow = DriverDeliveryFlow(client, FakeTransport(), driver_id="drv-1")
    assert flow.start() is False
    assert flow.error == "Failed to load deliveries"
    assert flow.transport.joined == {}


def test_accept_via_claim_rpc(client, flow):
    client.rpc_results["driver_claim_delivery"] = True

    result = flow.accept_delivery("d-2")

    assert result.ok
    assert client.calls_to("driver_claim_delivery") == [{"p_delivery_id": "d-2"}]
    assert client.writes_to("deliveries", "update") == []
    assert flow.store.find("d-2").status == "assigned"
    assert [d.id for d in flow.available_deliveries] == ["d-3"]


def test_accept_falls_back_to_conditional_update(client, flow):
    client.fail("rpc", "driver_claim_delivery")

    result = flow.accept_delivery("d-3")

    assert result.ok
    row = next(r for r in client.tables["deliveries"] if r["id"] == "d-3")
    assert row["driver_id"] == "drv-1"
    assert row["status"] == "assigned"
    assert row["assigned_at"] == NOW
    assert client.tables["delivery_drivers"][0]["is_available"] is False
    assert flow.deliveries[0].id == "d-3"


def test_accept_loses_race(client, flow):
    # claimed by someone else between load and accept
    client.tables["deliveries"][1].update(status="assigned", driver_id="drv-2")

    result = flow.accept_delivery("d-2")

    assert not result.ok
    assert result.message == "Delivery is no longer available"
    assert [d.id for d in flow.available_deliveries] == ["d-3"]
    assert client.tables["deliveries"][1]["driver_id"] == "drv-2"


def test_accept_without_driver(client):
    flow = DriverDeliveryFlow(client, include_available=True)
    assert flow.accept_delivery("d-2").ok is False
    assert client.rpc_calls == []


def test_update_status_stamps_timestamps(client, flow):
    assert flow.update_delivery_status("d-1", "on_the_way") is True

    row = client.tables["deliveries"][0]
    assert row["status"] == "on_the_way"
    assert row["picked_up_at"] == NOW
    assert row["updated_at"] == NOW
    assert flow.store.find("d-1").status == "on_the_way"


def test_delivered_closes_parent_order(client, flow):
    flow.update_delivery_status("d-1", "picked_up")
    assert flow.update_delivery_status("d-1", "delivered") is True

    assert client.tables["deliveries"][0]["delivered_at"] == NOW
    order = client.tables["orders"][0]
    assert order["status"] == "delivered"
    assert order["delivered_at"] == NOW
    # delivery row is written before the order row
    tables = [w[1] for w in client.writes if w[0] == "update"]
    assert tables[-2:] == ["deliveries", "orders"]


def test_backwards_move_is_rejected(client, flow):
    flow.update_delivery_status("d-1", "on_the_way")
    assert flow.update_delivery_status("d-1", "assigned") is False
    assert client.tables["deliveries"][0]["status"] == "on_the_way"


def test_realtime_reassignment_drops_delivery(flow):
    flow.transport.emit("realtime:deliveries-changes", "UPDATE", "deliveries",
                        new={"id": "d-1", "driver_id": "drv-7", "status": "assigned"})
    assert flow.deliveries == []
