"""
Purpose: The driver surface: load + follow deliveries, claim offers, advance delivery status.
What it does:

available -> assigned -> picked_up -> on_the_way -> delivered
cancelled is reachable from any non-terminal state.

DriverDeliveryFlow:
- load(): driver's in-progress deliveries and/or open offers
- start(): load, then one unfiltered channel on the deliveries table
- accept_delivery(): claim RPC, falling back to a conditional update
- update_delivery_status(): stamps timestamps; on delivered also closes the parent order

Marking the delivery delivered before the order keeps the order-side delivery
gate satisfied by construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from backend.client import BackendClient, BackendError
from orders.models import Delivery, DeliveryStatus, OrderStatus
from orders.policy import ACTIVE_DELIVERY_STATUSES, DELIVERY_FLOW, TERMINAL_DELIVERY_STATUSES
from realtime.channel import RealtimeChannel, RealtimeTransport

from .snapshot import DeliverySnapshotStore

logger = logging.getLogger(__name__)

LOAD_ERROR = "Failed to load deliveries"
SUBSCRIBE_ERROR = "Failed to set up real-time updates"
ACCEPT_ERROR = "Failed to accept delivery"

DELIVERY_SNAPSHOT_COLUMNS = """
    *,
    order:orders(*, restaurant:restaurants(*), order_items(*, menu_item:menu_items(*)))
"""

_KNOWN_DELIVERY_STATUSES = frozenset(s.value for s in DeliveryStatus)

# delivery status -> timestamp column stamped when entering it
_STATUS_TIMESTAMPS = {
    DeliveryStatus.PICKED_UP.value: "picked_up_at",
    DeliveryStatus.DELIVERED.value: "delivered_at",
    DeliveryStatus.CANCELLED.value: "cancelled_at",
}


class DeliveryStateException(Exception):
    """Raised when an invalid delivery transition is attempted."""
    pass


def can_transition_delivery(current: str, new: str) -> bool:
    if current in TERMINAL_DELIVERY_STATUSES or new not in _KNOWN_DELIVERY_STATUSES:
        return False
    if new == DeliveryStatus.CANCELLED.value:
        return True
    if current not in DELIVERY_FLOW or new not in DELIVERY_FLOW:
        return False
    return DELIVERY_FLOW.index(new) > DELIVERY_FLOW.index(current)


def next_delivery_status(current: str) -> str:
    if current not in DELIVERY_FLOW or current in TERMINAL_DELIVERY_STATUSES:
        raise DeliveryStateException(f"No next delivery status after {current}")
    return DELIVERY_FLOW[DELIVERY_FLOW.index(current) + 1]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AcceptResult:
    ok: bool
    message: Optional[str] = None


class DriverDeliveryFlow:
    """
    Owns one DeliverySnapshotStore for a driver and the channel feeding it.
    """

    def __init__(self, client: BackendClient, transport: Optional[RealtimeTransport] = None, *,
                 driver_id: Optional[str] = None, include_available: bool = False,
                 channel_name: str = "deliveries-changes",
                 clock: Callable[[], str] = _utc_now_iso):
        self.client = client
        self.transport = transport
        self.driver_id = driver_id
        self.channel_name = channel_name
        self.clock = clock
        self.store = DeliverySnapshotStore(driver_id, include_available)
        self.channel: Optional[RealtimeChannel] = None
        self.loading = False
        self.error: Optional[str] = None

    @property
    def deliveries(self):
        return self.store.mine

    @property
    def available_deliveries(self):
        return self.store.available

    # ---------------- lifecycle ----------------

    def load(self) -> bool:
        self.loading = True
        try:
            if self.driver_id:
                rows = (
                    self.client.table("deliveries")
                    .select(DELIVERY_SNAPSHOT_COLUMNS)
                    .eq("driver_id", self.driver_id)
                    .in_("status", ACTIVE_DELIVERY_STATUSES)
                    .fetch()
                )
                self.store.replace_mine(Delivery.from_row(row) for row in rows)
            if self.store.include_available:
                rows = (
                    self.client.table("deliveries")
                    .select(DELIVERY_SNAPSHOT_COLUMNS)
                    .eq("status", DeliveryStatus.AVAILABLE.value)
                    .order("created_at", ascending=True)
                    .fetch()
                )
                self.store.replace_available(Delivery.from_row(row) for row in rows)
            self.error = None
            return True
        except BackendError as exc:
            logger.error("Error loading initial deliveries for driver %s: %s", self.driver_id, exc)
            self.error = LOAD_ERROR
            return False
        finally:
            self.loading = False

    refetch = load

    def start(self) -> bool:
        if not self.load():
            return False
        if self.transport is None:
            return True

        channel = RealtimeChannel(self.channel_name, self.transport)
        channel.on("deliveries", self.store.apply_event)
        try:
            channel.subscribe()
        except Exception as exc:
            logger.error("Error setting up deliveries realtime subscription: %s", exc)
            self.error = SUBSCRIBE_ERROR
            return False
        self.channel = channel
        return True

    def close(self) -> None:
        if self.channel is not None:
            self.channel.unsubscribe()
            self.channel = None

    def __enter__(self) -> DriverDeliveryFlow:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---------------- actions ----------------

    def accept_delivery(self, delivery_id: str) -> AcceptResult:
        if not self.driver_id:
            return AcceptResult(False, "Driver not loaded")

        rpc_error: Optional[BackendError] = None
        try:
            claimed = self.client.rpc("driver_claim_delivery", {"p_delivery_id": delivery_id})
        except BackendError as exc:
            logger.warning("driver_claim_delivery failed for %s, attempting fallback: %s", delivery_id, exc)
            rpc_error = exc
            claimed = None

        now = self.clock()
        if claimed is True:
            self.store.move_to_mine(delivery_id, self.driver_id, now)
            return AcceptResult(True)

        # fallback for backends without the claim RPC; only wins while still available
        try:
            rows = (
                self.client.table("deliveries")
                .eq("id", delivery_id)
                .eq("status", DeliveryStatus.AVAILABLE.value)
                .update({
                    "driver_id": self.driver_id,
                    "status": DeliveryStatus.ASSIGNED.value,
                    "assigned_at": now,
                })
            )
        except BackendError as exc:
            reason = (rpc_error or exc).message
            logger.error("Error accepting delivery %s: %s", delivery_id, reason)
            self.error = ACCEPT_ERROR
            return AcceptResult(False, reason)

        if not rows:
            # someone else claimed it first
            logger.info("Delivery %s is no longer available", delivery_id)
            self.store.replace_available(d for d in self.store.available if d.id != delivery_id)
            return AcceptResult(False, "Delivery is no longer available")

        self.store.move_to_mine(delivery_id, self.driver_id, now)
        try:
            self.client.table("delivery_drivers").eq("id", self.driver_id).update({"is_available": False})
        except BackendError as exc:
            logger.warning("Failed to set driver %s unavailable: %s", self.driver_id, exc)
        return AcceptResult(True)

    def update_delivery_status(self, delivery_id: str, status: str) -> bool:
        status = status.value if isinstance(status, DeliveryStatus) else status
        local = self.store.find(delivery_id)
        if local is not None and not can_transition_delivery(local.status, status):
            logger.warning("Delivery %s cannot move from %s to %s", delivery_id, local.status, status)
            return False

        now = self.clock()
        updates = {"status": status, "updated_at": now}
        if status in _STATUS_TIMESTAMPS:
            updates[_STATUS_TIMESTAMPS[status]] = now
        elif status == DeliveryStatus.ON_THE_WAY.value and not (local and local.picked_up_at):
            updates["picked_up_at"] = now

        try:
            rows = self.client.table("deliveries").eq("id", delivery_id).update(updates)
        except BackendError as exc:
            logger.error("Error updating delivery %s to %s: %s", delivery_id, status, exc)
            return False

        if status == DeliveryStatus.DELIVERED.value:
            order_id = local.order_id if local else None
            if not order_id and rows:
                order_id = rows[0].get("order_id")
            if order_id:
                self._mark_order_delivered(order_id, now)

        self.store.patch(delivery_id, updates)
        return True

    def _mark_order_delivered(self, order_id: str, now: str) -> None:
        try:
            self.client.table("orders").eq("id", order_id).update({
                "status": OrderStatus.DELIVERED.value,
                "delivered_at": now,
                "updated_at": now,
            })
        except BackendError as exc:
            logger.warning("Failed to mark order %s delivered: %s", order_id, exc)
