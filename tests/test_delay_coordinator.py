from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeBackendClient, FakeClock
from mitigation.delay import (
    DRIVER_DELAY_REASON,
    PREP_DELAY_REASON,
    STALE_ORDER_ALERT,
    WIDE_BAND_ALERT,
    CreditStatus,
    DelayKind,
    DelayMitigationCoordinator,
    DelayWorkflow,
    DelayWorkflowError,
    RerouteStatus,
    detect_delay,
    eta_alert,
)
from mitigation.events import EventLog, WriteQueue
from mitigation.reroute import reroute_order
from orders.models import Order

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def iso(minutes_from_now):
    return (NOW + timedelta(minutes=minutes_from_now)).isoformat()


def make_order(**overrides):
    row = {
        "id": "o-1",
        "user_id": "u-1",
        "restaurant_id": "rest-1",
        "status": "preparing",
        "payment_status": "paid",
        "created_at": iso(-40),
        "eta_confidence_low": iso(-20),
        "eta_confidence_high": iso(-5),
        "restaurant": {"id": "rest-1", "city": "Harare"},
    }
    row.update(overrides)
    return Order.from_row(row)


def rollout_row(**config):
    return {"key": "trusted_arrival", "config": config}


@pytest.fixture
def client():
    return FakeBackendClient({
        "trusted_rollout_config": [rollout_row(observe_only=False, reroute_enabled_for=["rest-1"],
                                               substitutions_enabled_for=["rest-1"])],
        "backup_restaurants": [
            {"id": "b-1", "restaurant_id": "rest-1", "backup_restaurant_id": "rest-2", "priority": 2,
             "is_active": True, "backup_restaurant": {"id": "rest-2", "name": "Second", "is_open": True}},
            {"id": "b-2", "restaurant_id": "rest-1", "backup_restaurant_id": "rest-3", "priority": 1,
             "is_active": True, "backup_restaurant": {"id": "rest-3", "name": "Closed", "is_open": False}},
        ],
    })


@pytest.fixture
def coordinator(client):
    return DelayMitigationCoordinator(client, clock=lambda: NOW)


def set_config(client, **config):
    client.tables["trusted_rollout_config"] = [rollout_row(**config)]


# ---------------- detection ----------------

def test_prep_delay_past_window():
    assert detect_delay(make_order(), NOW) is DelayKind.PREP
    assert detect_delay(make_order(eta_confidence_high=iso(5)), NOW) is None


def test_driver_delay_when_location_stale():
    order = make_order(status="on_the_way")
    assert detect_delay(order, NOW, driver_last_update=iso(-6)) is DelayKind.DRIVER
    assert detect_delay(order, NOW, driver_last_update=iso(-2)) is None


def test_driver_delay_reads_embedded_driver():
    order = make_order(status="picked_up", delivery={
        "id": "d-1", "driver_id": "drv-1", "status": "picked_up",
        "driver": {"id": "drv-1", "last_location_update": iso(-10)},
    })
    assert detect_delay(order, NOW) is DelayKind.DRIVER


def test_no_delay_after_delivery():
    assert detect_delay(make_order(status="delivered"), NOW, driver_last_update=iso(-60)) is None


def test_eta_alerts():
    assert eta_alert(make_order(), NOW) is None
    wide = make_order(eta_confidence_low=iso(0), eta_confidence_high=iso(40))
    assert eta_alert(wide, NOW) == WIDE_BAND_ALERT
    # staleness wins over the band alert
    old = make_order(created_at=iso(-120), eta_confidence_low=iso(0), eta_confidence_high=iso(40))
    assert eta_alert(old, NOW) == STALE_ORDER_ALERT
    assert eta_alert(make_order(created_at=iso(-120), delivered_at=iso(-1)), NOW) is None


# ---------------- workflow ----------------

def test_workflow_transitions():
    wf = DelayWorkflow("o-1")
    wf.begin_credit()
    wf.finish_credit(False)
    assert wf.credit_status is CreditStatus.FAILED
    wf.begin_credit()
    wf.finish_credit(True)
    with pytest.raises(DelayWorkflowError):
        wf.begin_credit()

    wf.decide_reroute(RerouteStatus.DECLINED)
    with pytest.raises(DelayWorkflowError):
        wf.decide_reroute(RerouteStatus.SENT)


# ---------------- coordinator ----------------

def test_observe_only_enables_nothing(client, coordinator):
    set_config(client, observe_only=True, reroute_enabled_for=["rest-1"], substitutions_enabled_for=["rest-1"])

    offer = coordinator.evaluate(make_order())

    assert offer.at_risk and offer.observe_only
    assert not offer.credit_enabled
    assert not offer.reroute_enabled
    assert not offer.substitutions_enabled
    assert not offer.actionable
    # detection is still recorded
    assert [e["event_type"] for e in client.tables["delivery_events"]] == ["prep_delay_detected"]


def test_missing_config_enables_nothing(client, coordinator):
    client.tables["trusted_rollout_config"] = []
    offer = coordinator.evaluate(make_order())
    assert offer.observe_only and not offer.actionable


def test_live_offer_for_prep_delay(client, coordinator):
    offer = coordinator.evaluate(make_order())

    assert offer.delay_reason == PREP_DELAY_REASON
    assert offer.credit_enabled
    assert offer.reroute_enabled
    assert offer.backup_plan.restaurant_id == "rest-2"
    assert offer.backup_plan.eta_label.endswith("min")
    assert offer.substitutions_enabled


def test_delay_is_logged_once(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)
    coordinator.evaluate(order)

    assert len(client.tables["delivery_events"]) == 1
    audit = client.tables["audit_logs"]
    assert len(audit) == 1
    assert audit[0]["detail"]["idempotency_key"] == "prep_delay_o-1"


def test_driver_delay_reason(client, coordinator):
    order = make_order(status="on_the_way", delivery={"id": "d-1", "driver_id": "drv-1", "status": "on_the_way"})
    offer = coordinator.evaluate(order, driver_last_update=iso(-8))
    assert offer.delay_reason == DRIVER_DELAY_REASON
    event = client.tables["delivery_events"][0]
    assert event["event_type"] == "driver_delay_detected"
    assert event["driver_id"] == "drv-1"


def test_config_is_reread_every_evaluation(client, coordinator):
    order = make_order()
    assert coordinator.evaluate(order).reroute_enabled

    # kill switch removed the restaurant from the allow-list
    set_config(client, observe_only=False, reroute_enabled_for=[])
    assert not coordinator.evaluate(order).reroute_enabled


def test_reroute_allowed_by_city(client, coordinator):
    set_config(client, observe_only=False, reroute_enabled_for=["Harare"])
    assert coordinator.evaluate(make_order()).reroute_enabled


def test_no_reroute_without_open_backup(client, coordinator):
    client.tables["backup_restaurants"][0]["backup_restaurant"]["is_open"] = False
    offer = coordinator.evaluate(make_order())
    assert not offer.reroute_enabled
    assert offer.credit_enabled


def test_credit_issued_once(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)

    assert coordinator.accept_credit(order) is CreditStatus.ISSUED
    assert coordinator.accept_credit(order) is CreditStatus.ISSUED

    grants = client.calls_to("grant_delay_credit")
    assert grants == [{
        "p_user_id": "u-1", "p_amount": 10.0, "p_reason": "delay_credit",
        "p_idempotency_key": "delay_o-1", "p_order_id": "o-1",
    }]
    issued = [e for e in client.tables["delivery_events"] if e["event_type"] == "delay_credit_issued"]
    assert len(issued) == 1
    assert not coordinator.evaluate(order).credit_enabled


def test_failed_credit_can_retry(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)
    client.fail("rpc", "grant_delay_credit", times=1)

    assert coordinator.accept_credit(order) is CreditStatus.FAILED
    assert coordinator.evaluate(order).credit_enabled
    assert coordinator.accept_credit(order) is CreditStatus.ISSUED
    assert len(client.calls_to("grant_delay_credit")) == 2


def test_credit_refused_in_observe_only(client, coordinator):
    order = make_order()
    set_config(client, observe_only=True)
    coordinator.evaluate(order)
    assert coordinator.accept_credit(order) is CreditStatus.IDLE
    assert client.calls_to("grant_delay_credit") == []


def test_credit_needs_a_recorded_delay(client, coordinator):
    # never evaluated
    assert coordinator.accept_credit(make_order()) is CreditStatus.IDLE

    on_time = make_order(id="o-2", eta_confidence_high=iso(15))
    assert not coordinator.evaluate(on_time).at_risk
    assert coordinator.accept_credit(on_time) is CreditStatus.IDLE
    assert client.calls_to("grant_delay_credit") == []


def test_credit_needs_a_customer(client, coordinator):
    order = make_order(user_id=None)
    assert not coordinator.evaluate(order).credit_enabled
    assert coordinator.accept_credit(order) is CreditStatus.IDLE


def test_reroute_decision_is_terminal(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)

    assert coordinator.approve_reroute(order) is RerouteStatus.SENT
    assert coordinator.decline_reroute(order) is RerouteStatus.SENT
    assert not coordinator.evaluate(order).reroute_enabled

    decisions = [e for e in client.tables["delivery_events"] if e["event_type"] == "auto_reroute_decision"]
    assert len(decisions) == 1
    assert decisions[0]["payload"]["decision"] == "approve"
    assert decisions[0]["payload"]["idempotency_key"] == "reroute_o-1_rest-2_approve"


def test_decline_records_stay(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)
    assert coordinator.decline_reroute(order) is RerouteStatus.DECLINED
    audit = [a for a in client.tables["audit_logs"] if a["action"] == "auto_reroute"]
    assert audit[0]["detail"]["reason"] == "user_stay"


def test_decision_without_plan_is_ignored(coordinator):
    assert coordinator.approve_reroute(make_order()) is RerouteStatus.IDLE


def test_reroute_order_rpc(client):
    events = EventLog(client)
    client.rpc_results["reroute_order_rpc"] = "o-new"

    result = reroute_order(client, events, "o-1", "rest-2")

    assert result.ok and result.new_order_id == "o-new"
    assert client.calls_to("reroute_order_rpc")[0]["p_idempotency_key"] == "reroute_o-1_rest-2"
    assert client.tables["delivery_events"][0]["event_type"] == "auto_reroute_performed"

    client.fail("rpc", "reroute_order_rpc")
    assert reroute_order(client, events, "o-1", "rest-2").reason == "reroute_failed"


def test_reroute_refused_after_switch_to_observe_only(client, coordinator):
    order = make_order()
    assert coordinator.evaluate(order).reroute_enabled

    set_config(client, observe_only=True, reroute_enabled_for=["rest-1"])
    assert coordinator.approve_reroute(order) is RerouteStatus.IDLE
    assert coordinator.decline_reroute(order) is RerouteStatus.IDLE
    assert [e for e in client.tables["delivery_events"] if e["event_type"] == "auto_reroute_decision"] == []


def test_reroute_refused_when_dropped_from_allow_list(client, coordinator):
    order = make_order()
    coordinator.evaluate(order)

    set_config(client, observe_only=False, reroute_enabled_for=[])
    assert coordinator.approve_reroute(order) is RerouteStatus.IDLE


def test_parked_delay_event_is_written_on_later_evaluation(client):
    clock = FakeClock()
    events = EventLog(client, WriteQueue(clock=clock))
    coordinator = DelayMitigationCoordinator(client, events=events, clock=lambda: NOW)
    client.fail("insert", "delivery_events", times=1)
    order = make_order()

    coordinator.evaluate(order)
    assert client.tables["delivery_events"] == []
    assert len(events.queue) == 2

    clock.advance(1)
    coordinator.evaluate(order)

    assert [e["event_type"] for e in client.tables["delivery_events"]] == ["prep_delay_detected"]
    assert len(client.tables["audit_logs"]) == 1
    assert len(events.queue) == 0
