"""
Purpose: Package entry + stable exports.
What it does:

Marks orders as a Python package and re-exports the public API so other
modules can do:

from orders import Order, OrderScope, OrderSync

Should not contain business logic.

Public API:
- Domain models: Order, Delivery, LineItem, OrderStatus, PaymentStatus, DeliveryStatus
- Snapshot + sync: OrderScope, OrderSnapshotStore, OrderSync, should_include_order
- Write guard: OrderStatusGuard, OrderStateException
"""
from .models import Delivery, DeliveryStatus, LineItem, Order, OrderStatus, PaymentStatus
from .snapshot import OrderSnapshotStore
from .state_machine import OrderStateException, OrderStatusGuard, can_transition
from .sync import OrderSync
from .visibility import OrderScope, should_include_order

__all__ = [
    "Delivery",
    "DeliveryStatus",
    "LineItem",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "OrderSnapshotStore",
    "OrderStateException",
    "OrderStatusGuard",
    "can_transition",
    "OrderSync",
    "OrderScope",
    "should_include_order",
]
