"""
Purpose: Customer-side order tracking.
What it does:
- ORDER_STEPS and the step index shown on the progress bar
- display_status(): which step the customer sees (delivery progress wins once
  the courier has the food)
- eta_details(): arrival window text, band width and whether it is "trusted"
- TrackingSession: refund request after a paid order was cancelled, and the
  live driver-location feed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.client import BackendClient, BackendError
from mitigation.policy import DelayPolicy, default_delay_policy
from realtime.channel import RealtimeChannel, RealtimeTransport
from realtime.events import ChangeEvent

from .models import DeliveryStatus, Order, OrderStatus, parse_timestamp
from .policy import APPROVED_PAYMENT_STATUSES, CUSTOMER_REFUND_REASON

logger = logging.getLogger(__name__)

ORDER_STEPS = (
    ("payment_pending", "Order Placed"),
    ("confirmed", "Order Confirmed"),
    ("preparing", "Preparing Food"),
    ("ready", "Ready for Pickup"),
    ("picked_up", "Out for Delivery"),
    ("delivered", "Delivered"),
)

# delivery progress that should override the kitchen-side order status
_COURIER_PROGRESS = {
    DeliveryStatus.PICKED_UP.value,
    DeliveryStatus.ON_THE_WAY.value,
    DeliveryStatus.DELIVERED.value,
}


def is_delivered(order: Order) -> bool:
    delivery = order.delivery
    return bool(
        (delivery is not None and delivery.status == DeliveryStatus.DELIVERED.value)
        or order.delivered_at
        or (delivery is not None and delivery.delivered_at)
    )


def display_status(order: Optional[Order]) -> Optional[str]:
    if order is None:
        return None
    if is_delivered(order):
        return OrderStatus.DELIVERED.value
    source = order.status
    if order.delivery is not None and order.delivery.status in _COURIER_PROGRESS:
        source = order.delivery.status
    if source == OrderStatus.ON_THE_WAY.value:
        return OrderStatus.PICKED_UP.value
    return source


def current_step_index(order: Optional[Order]) -> int:
    if order is None:
        return -1
    status = display_status(order)
    for index, (key, _label) in enumerate(ORDER_STEPS):
        if key == status:
            return index
    return 0


def can_request_refund(order: Optional[Order]) -> bool:
    return bool(
        order is not None
        and order.status == OrderStatus.CANCELLED.value
        and order.payment_status in APPROVED_PAYMENT_STATUSES
    )


@dataclass(frozen=True)
class EtaDetails:
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    band_width_minutes: Optional[float]
    show_trusted_eta: bool
    last_updated: Optional[datetime]

    @property
    def window_label(self) -> Optional[str]:
        if self.window_start and self.window_end:
            return f"{self.window_start:%H:%M} - {self.window_end:%H:%M}"
        if self.window_start:
            return f"{self.window_start:%H:%M}"
        return None


def eta_details(order: Optional[Order], now: Optional[datetime] = None,
                policy: Optional[DelayPolicy] = None) -> EtaDetails:
    """
    The window is trusted only when it is narrow, still ahead of us and recently refreshed.
    """
    if order is None:
        return EtaDetails(None, None, None, False, None)
    policy = policy or default_delay_policy()
    now = now or datetime.now(timezone.utc)

    low = parse_timestamp(order.eta_confidence_low)
    high = parse_timestamp(order.eta_confidence_high)
    last_updated = parse_timestamp(order.updated_at) or parse_timestamp(order.created_at)

    if low and high:
        width = (high - low).total_seconds() / 60
        still_relevant = high > now + timedelta(minutes=policy.trusted_min_lead_minutes)
        fresh = (
            last_updated is not None
            and now - last_updated < timedelta(minutes=policy.trusted_max_age_minutes)
        )
        trusted = width <= policy.trusted_max_band_minutes and still_relevant and fresh
        return EtaDetails(low, high, width, trusted, last_updated)

    promised = parse_timestamp(order.eta_promised)
    return EtaDetails(promised, None, None, False, last_updated)


@dataclass(frozen=True)
class DriverLocation:
    latitude: float
    longitude: float
    updated_at: Optional[str] = None


class TrackingSession:
    """
    Per-order customer actions that live only as long as the tracking screen.
    """

    def __init__(self, client: BackendClient, transport: Optional[RealtimeTransport] = None):
        self.client = client
        self.transport = transport
        self.refund_requested = False
        self.refund_status: Optional[str] = None
        self.driver_location: Optional[DriverLocation] = None
        self._driver_channel: Optional[RealtimeChannel] = None

    # --- refunds ---

    def request_refund(self, order: Order) -> bool:
        if self.refund_requested or not can_request_refund(order):
            return False
        self.refund_status = "Requesting refund..."
        try:
            self.client.rpc("enqueue_order_refund", {
                "p_order_id": order.id,
                "p_reason": CUSTOMER_REFUND_REASON,
            })
        except BackendError as exc:
            logger.error("Refund request failed for %s: %s", order.id, exc)
            self.refund_status = "Refund request failed. Please retry later."
            return False
        self.refund_requested = True
        self.refund_status = "Refund requested. Awaiting admin confirmation."
        return True

    # --- live driver location ---

    def follow_driver(self, driver_id: str,
                      on_update: Optional[Callable[[DriverLocation], None]] = None) -> None:
        """
        Seed the driver's last known position, then follow location updates.
        """
        self.stop_following()
        try:
            row = (
                self.client.table("delivery_drivers")
                .select("current_latitude,current_longitude,last_location_update")
                .eq("id", driver_id)
                .maybe_single()
            )
        except BackendError as exc:
            logger.warning("Could not load driver %s location: %s", driver_id, exc)
            row = None
        if row:
            self._update_location(row, on_update)

        if self.transport is None:
            return

        def handle(event: ChangeEvent) -> None:
            self._update_location(event.new, on_update)

        channel = RealtimeChannel(f"driver-location-{driver_id}", self.transport)
        channel.on("delivery_drivers", handle, event="UPDATE", filter=f"id=eq.{driver_id}")
        channel.subscribe()
        self._driver_channel = channel

    def stop_following(self) -> None:
        if self._driver_channel is not None:
            self._driver_channel.unsubscribe()
            self._driver_channel = None

    def close(self) -> None:
        self.stop_following()

    def _update_location(self, row, on_update) -> None:
        lat, lon = row.get("current_latitude"), row.get("current_longitude")
        if not lat or not lon:
            return
        self.driver_location = DriverLocation(float(lat), float(lon), row.get("last_location_update"))
        if on_update is not None:
            on_update(self.driver_location)
