"""
Purpose: Central configuration for order lifecycle rules (single source of truth).
What it does:

Stores the status sets that gate transitions and visibility:

PAYMENT_GATED_STATUSES = confirmed, preparing, ready, picked_up, on_the_way
APPROVED_PAYMENT_STATUSES = paid, captured
RESTAURANT_VISIBLE_PAYMENT_STATUSES = paid, paid_pending_review, payment_pending, hold, initiated, captured
TERMINAL_STATUSES = delivered, cancelled

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

from typing import FrozenSet, Tuple

from .models import DeliveryStatus, OrderStatus, PaymentStatus

# Forward path of an order; cancelled is reachable from any non-terminal state.
ORDER_FLOW: Tuple[str, ...] = (
    OrderStatus.PAYMENT_PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.READY.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.ON_THE_WAY.value,
    OrderStatus.DELIVERED.value,
)

TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
})

# Restaurants cannot move an order into these until payment is approved.
PAYMENT_GATED_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.READY.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.ON_THE_WAY.value,
})

APPROVED_PAYMENT_STATUSES: FrozenSet[str] = frozenset({
    PaymentStatus.PAID.value,
    PaymentStatus.CAPTURED.value,
})

# Orders in any other payment state (failed, refunded, voided...) are hidden from restaurants.
RESTAURANT_VISIBLE_PAYMENT_STATUSES: Tuple[str, ...] = (
    PaymentStatus.PAID.value,
    PaymentStatus.PAID_PENDING_REVIEW.value,
    PaymentStatus.PAYMENT_PENDING.value,
    PaymentStatus.HOLD.value,
    PaymentStatus.INITIATED.value,
    PaymentStatus.CAPTURED.value,
)

DEFAULT_CANCELLATION_REASON = "Restaurant cancelled"
CUSTOMER_REFUND_REASON = "Customer requested refund after cancellation"

# Embedded joins loaded with every order snapshot.
ORDER_SNAPSHOT_COLUMNS = """
    *,
    restaurant:restaurants(*),
    order_items(*, menu_item:menu_items(*)),
    delivery:deliveries(*, driver:delivery_drivers(*))
"""

# Delivery statuses a driver is still working on.
ACTIVE_DELIVERY_STATUSES: Tuple[str, ...] = (
    DeliveryStatus.ASSIGNED.value,
    DeliveryStatus.PICKED_UP.value,
    DeliveryStatus.ON_THE_WAY.value,
)

DELIVERY_FLOW: Tuple[str, ...] = (
    DeliveryStatus.AVAILABLE.value,
    DeliveryStatus.ASSIGNED.value,
    DeliveryStatus.PICKED_UP.value,
    DeliveryStatus.ON_THE_WAY.value,
    DeliveryStatus.DELIVERED.value,
)

TERMINAL_DELIVERY_STATUSES: FrozenSet[str] = frozenset({
    DeliveryStatus.DELIVERED.value,
    DeliveryStatus.CANCELLED.value,
})
