"""
Purpose: Delay mitigation for an in-flight order (credit-for-delay, reroute to a backup).
What it does:

Per order, two small client-local workflows:

credit:  idle -> issuing -> issued | failed   (failed may retry: failed -> issuing)
reroute: idle -> sent | declined             (both terminal)

DelayMitigationCoordinator.evaluate():
1. detect the delay (kitchen past the window, or courier location gone stale)
   and record it once per order
2. re-read the rollout config (never cached)
3. decide which actions are enabled; observe-only enables nothing

Rule: workflow state lives here for the viewing session only; it is never written
onto the Order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend.client import BackendClient, BackendError
from orders.models import Order, parse_timestamp

from .events import EventLog
from .policy import DelayPolicy, default_delay_policy
from .reroute import BackupPlan, backup_plan, log_reroute_decision
from .rollout import RolloutConfig, RolloutRepository

logger = logging.getLogger(__name__)

PREP_DELAY_REASON = "Kitchen behind"
DRIVER_DELAY_REASON = "Driver delay (traffic spike)"
WIDE_BAND_ALERT = "Arrival window is wide. We are monitoring for delays."
STALE_ORDER_ALERT = "Order ETA data may be stale. Expect potential delays."


class CreditStatus(str, Enum):
    IDLE = "idle"
    ISSUING = "issuing"
    ISSUED = "issued"
    FAILED = "failed"


class RerouteStatus(str, Enum):
    IDLE = "idle"
    SENT = "sent"
    DECLINED = "declined"


class DelayKind(str, Enum):
    PREP = "prep"
    DRIVER = "driver"


class DelayWorkflowError(Exception):
    """Raised when an invalid credit/reroute transition is attempted."""
    pass


@dataclass
class DelayWorkflow:
    order_id: str
    credit_status: CreditStatus = CreditStatus.IDLE
    reroute_status: RerouteStatus = RerouteStatus.IDLE
    delay_reason: Optional[str] = None
    prep_logged: bool = False
    driver_logged: bool = False
    backup_plan: Optional[BackupPlan] = None
    backup_checked: bool = False

    @property
    def can_issue_credit(self) -> bool:
        return self.credit_status in (CreditStatus.IDLE, CreditStatus.FAILED)

    def begin_credit(self) -> None:
        if not self.can_issue_credit:
            raise DelayWorkflowError(f"Credit for {self.order_id} is already {self.credit_status.value}")
        self.credit_status = CreditStatus.ISSUING

    def finish_credit(self, ok: bool) -> None:
        if self.credit_status is not CreditStatus.ISSUING:
            raise DelayWorkflowError(f"Credit for {self.order_id} is not being issued")
        self.credit_status = CreditStatus.ISSUED if ok else CreditStatus.FAILED

    def decide_reroute(self, status: RerouteStatus) -> None:
        if self.reroute_status is not RerouteStatus.IDLE:
            raise DelayWorkflowError(f"Reroute for {self.order_id} already {self.reroute_status.value}")
        if status is RerouteStatus.IDLE:
            raise DelayWorkflowError("A reroute decision must be sent or declined")
        self.reroute_status = status


def _driver_last_update(order: Order, driver_last_update: Any) -> Optional[datetime]:
    if driver_last_update is not None:
        return parse_timestamp(driver_last_update)
    driver = order.delivery.driver if order.delivery else None
    return parse_timestamp((driver or {}).get("last_location_update"))


def detect_delay(order: Order, now: Optional[datetime] = None, *,
                 driver_last_update: Any = None,
                 policy: Optional[DelayPolicy] = None) -> Optional[DelayKind]:
    """
    PREP: kitchen phase and we are past the high end of the window.
    DRIVER: courier phase and the courier has not reported a location recently.
    """
    policy = policy or default_delay_policy()
    now = now or datetime.now(timezone.utc)

    eta_high = parse_timestamp(order.eta_confidence_high)
    if order.status in policy.prep_phase_statuses and eta_high and now > eta_high:
        return DelayKind.PREP

    last_update = _driver_last_update(order, driver_last_update)
    stale_after = timedelta(minutes=policy.driver_stale_minutes)
    if order.status in policy.driver_phase_statuses and last_update and now - last_update > stale_after:
        return DelayKind.DRIVER
    return None


def eta_alert(order: Order, now: Optional[datetime] = None,
              policy: Optional[DelayPolicy] = None) -> Optional[str]:
    policy = policy or default_delay_policy()
    now = now or datetime.now(timezone.utc)
    alert = None

    low = parse_timestamp(order.eta_confidence_low)
    high = parse_timestamp(order.eta_confidence_high)
    if low and high and abs((high - low).total_seconds()) / 60 > policy.eta_band_alert_minutes:
        alert = WIDE_BAND_ALERT

    created = parse_timestamp(order.created_at)
    if created and not order.delivered_at and not order.cancelled_at:
        if (now - created).total_seconds() / 60 > policy.stale_order_age_minutes:
            alert = STALE_ORDER_ALERT
    return alert


@dataclass(frozen=True)
class DelayOffer:
    order_id: str
    at_risk: bool
    delay_reason: Optional[str]
    observe_only: bool
    credit_enabled: bool
    credit_status: CreditStatus
    reroute_enabled: bool
    reroute_status: RerouteStatus
    backup_plan: Optional[BackupPlan]
    substitutions_enabled: bool
    eta_alert: Optional[str] = None

    @property
    def actionable(self) -> bool:
        return self.credit_enabled or self.reroute_enabled


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DelayMitigationCoordinator:
    """
    Offers remediation for late orders, gated by the rollout config.

    Kill-switch thresholds are not checked here: the admin kill switch edits the
    allow-lists, and the config is re-read before every decision.
    """

    def __init__(self, client: BackendClient, *, events: Optional[EventLog] = None,
                 rollout: Optional[RolloutRepository] = None,
                 policy: Optional[DelayPolicy] = None,
                 clock: Callable[[], datetime] = _utc_now):
        self.client = client
        self.events = events or EventLog(client)
        self.rollout = rollout or RolloutRepository(client)
        self.policy = policy or default_delay_policy()
        self.clock = clock
        self._workflows: Dict[str, DelayWorkflow] = {}

    def workflow(self, order_id: str) -> DelayWorkflow:
        if order_id not in self._workflows:
            self._workflows[order_id] = DelayWorkflow(order_id)
        return self._workflows[order_id]

    def forget(self, order_id: str) -> None:
        self._workflows.pop(order_id, None)

    # ---------------- detection ----------------

    def evaluate(self, order: Order, *, driver_last_update: Any = None) -> DelayOffer:
        wf = self.workflow(order.id)
        now = self.clock()
        self.events.flush()
        self._record_delay(order, wf, detect_delay(
            order, now, driver_last_update=driver_last_update, policy=self.policy,
        ))

        config = self.rollout.get_config()
        at_risk = wf.delay_reason is not None
        live = at_risk and not config.observe_only

        credit_enabled = bool(live and order.user_id and wf.can_issue_credit)

        reroute_allowed = live and wf.reroute_status is RerouteStatus.IDLE and config.reroute_enabled(
            order.restaurant_id, (order.restaurant or {}).get("city"),
        )
        plan = self._backup_plan(order, wf) if reroute_allowed else wf.backup_plan
        reroute_enabled = bool(reroute_allowed and plan is not None)

        substitutions_enabled = live and config.substitutions_enabled(order.restaurant_id)

        if at_risk and config.observe_only:
            logger.debug("Order %s at risk (%s); observe-only, no offer", order.id, wf.delay_reason)

        return DelayOffer(
            order_id=order.id,
            at_risk=at_risk,
            delay_reason=wf.delay_reason,
            observe_only=config.observe_only,
            credit_enabled=credit_enabled,
            credit_status=wf.credit_status,
            reroute_enabled=reroute_enabled,
            reroute_status=wf.reroute_status,
            backup_plan=plan,
            substitutions_enabled=substitutions_enabled,
            eta_alert=eta_alert(order, now, self.policy),
        )

    def _record_delay(self, order: Order, wf: DelayWorkflow, kind: Optional[DelayKind]) -> None:
        if kind is DelayKind.PREP and not wf.prep_logged:
            wf.prep_logged = True
            wf.delay_reason = PREP_DELAY_REASON
            key = f"prep_delay_{order.id}"
            self.events.create_delivery_event(
                order.id, "prep_delay_detected",
                payload={"eta_high": order.eta_confidence_high}, idempotency_key=key,
            )
            self.events.log_audit(
                "prep_delay_detected", "orders", order.id,
                {"eta_high": order.eta_confidence_high, "idempotency_key": key},
            )
            logger.info("Order %s: %s", order.id, PREP_DELAY_REASON)

        elif kind is DelayKind.DRIVER and not wf.driver_logged:
            wf.driver_logged = True
            wf.delay_reason = DRIVER_DELAY_REASON
            key = f"driver_delay_{order.id}"
            delivery = order.delivery
            last_update = _driver_last_update(order, None)
            self.events.create_delivery_event(
                order.id, "driver_delay_detected",
                payload={"last_update": last_update.isoformat() if last_update else None},
                driver_id=delivery.driver_id if delivery else None,
                idempotency_key=key,
            )
            self.events.log_audit(
                "driver_delay_detected", "deliveries", delivery.id if delivery else None,
                {"order_id": order.id, "idempotency_key": key},
            )
            logger.info("Order %s: %s", order.id, DRIVER_DELAY_REASON)

    def _backup_plan(self, order: Order, wf: DelayWorkflow) -> Optional[BackupPlan]:
        # looked up once per order per session
        if not wf.backup_checked:
            wf.backup_plan = backup_plan(self.client, order.restaurant_id)
            wf.backup_checked = True
        return wf.backup_plan

    # ---------------- credit ----------------

    def accept_credit(self, order: Order) -> CreditStatus:
        wf = self.workflow(order.id)
        if not wf.can_issue_credit:
            return wf.credit_status
        if wf.delay_reason is None:
            logger.warning("Order %s is not delayed; no credit to issue", order.id)
            return wf.credit_status
        if not order.user_id:
            logger.warning("Order %s has no customer; cannot issue credit", order.id)
            return wf.credit_status
        config: RolloutConfig = self.rollout.get_config()
        if config.observe_only:
            logger.warning("Credit for %s refused: rollout is observe-only", order.id)
            return wf.credit_status

        wf.begin_credit()
        amount = self.policy.credit_amount
        try:
            result = self.client.rpc("grant_delay_credit", {
                "p_user_id": order.user_id,
                "p_amount": amount,
                "p_reason": self.policy.credit_reason,
                "p_idempotency_key": f"delay_{order.id}",
                "p_order_id": order.id,
            })
            ok = result is not False
        except BackendError as exc:
            logger.error("Error granting delay credit for %s: %s", order.id, exc)
            ok = False
        wf.finish_credit(ok)

        if ok:
            key = f"delay_credit_{order.id}"
            self.events.create_delivery_event(
                order.id, "delay_credit_issued", payload={"amount": amount}, idempotency_key=key,
            )
            self.events.log_audit(
                "delay_credit_issued", "wallet_transactions", None,
                {"amount": amount, "order_id": order.id, "idempotency_key": key},
                order.user_id,
            )
        return wf.credit_status

    # ---------------- reroute ----------------

    def approve_reroute(self, order: Order) -> RerouteStatus:
        return self._decide(order, RerouteStatus.SENT, "approve", "user_approved")

    def decline_reroute(self, order: Order) -> RerouteStatus:
        return self._decide(order, RerouteStatus.DECLINED, "decline", "user_stay")

    def _decide(self, order: Order, status: RerouteStatus, decision: str, reason: str) -> RerouteStatus:
        wf = self.workflow(order.id)
        plan = wf.backup_plan
        if wf.reroute_status is not RerouteStatus.IDLE or plan is None:
            return wf.reroute_status
        config = self.rollout.get_config()
        if config.observe_only or not config.reroute_enabled(
            order.restaurant_id, (order.restaurant or {}).get("city"),
        ):
            logger.warning("Reroute %s for %s refused: no longer enabled by rollout", decision, order.id)
            return wf.reroute_status
        wf.decide_reroute(status)
        log_reroute_decision(self.events, order.id, plan.restaurant_id, decision, reason)
        logger.info("Order %s reroute to %s: %s", order.id, plan.restaurant_name, status.value)
        return wf.reroute_status
