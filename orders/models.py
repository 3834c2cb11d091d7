"""
Purpose: Domain models for the Orders capability.
What it does:
- Defines core data structures:
- Order (ids, money breakdown, status, payment_status, address, timestamps,
  joined restaurant / line items / delivery)
- Delivery (courier assignment for one order: driver, status, coordinates, distance)
- LineItem (menu item reference + quantity + price)

Defines enums/constants (wire strings):
- OrderStatus = payment_pending | confirmed | preparing | ready | picked_up | on_the_way | delivered | cancelled
- PaymentStatus = payment_pending | paid_pending_review | paid | captured | hold | initiated | failed | refunded | voided
- DeliveryStatus = available | assigned | picked_up | on_the_way | delivered | cancelled

Statuses are kept as plain strings on the models so rows with values we do not
know yet still load; the enums are the vocabulary used by policy and guards.

Rule: No backend calls, no realtime logic. Models only.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

Row = Dict[str, Any]


class OrderStatus(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAID_PENDING_REVIEW = "paid_pending_review"
    PAID = "paid"
    CAPTURED = "captured"
    HOLD = "hold"
    INITIATED = "initiated"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"


class DeliveryStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# older rows still carry the pre-payment-flow status name
_LEGACY_ORDER_STATUS = {"pending": OrderStatus.PAYMENT_PENDING.value}


def _status_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def normalize_order_status(value: Any) -> str:
    text = _status_value(value) or OrderStatus.PAYMENT_PENDING.value
    return _LEGACY_ORDER_STATUS.get(text, text)


def _split_known(cls, row: Row) -> tuple:
    names = {f.name for f in fields(cls)}
    known = {k: v for k, v in row.items() if k in names and k != "extra"}
    extra = {k: v for k, v in row.items() if k not in names}
    return known, extra


@dataclass
class LineItem:
    """
    One menu item on an order.
    """
    menu_item_id: Optional[str]
    quantity: int = 1
    unit_price: float = 0.0
    total_price: float = 0.0
    special_instructions: Optional[str] = None
    id: Optional[str] = None
    menu_item: Optional[Row] = None

    @classmethod
    def from_row(cls, row: Row) -> LineItem:
        return cls(
            id=row.get("id"),
            menu_item_id=row.get("menu_item_id"),
            quantity=int(row.get("quantity") or 1),
            unit_price=float(row.get("unit_price") or 0),
            total_price=float(row.get("total_price") or 0),
            special_instructions=row.get("special_instructions"),
            menu_item=row.get("menu_item"),
        )

    def to_row(self) -> Row:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "special_instructions": self.special_instructions,
            "menu_item": self.menu_item,
        }


@dataclass
class Delivery:
    """
    Courier assignment and physical fulfilment of one Order.
    Only the driver flow advances its status.
    """
    id: str
    order_id: Optional[str] = None
    driver_id: Optional[str] = None
    status: str = DeliveryStatus.AVAILABLE.value

    pickup_address: Optional[str] = None
    delivery_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    delivery_latitude: Optional[float] = None
    delivery_longitude: Optional[float] = None
    distance_km: Optional[float] = None
    estimated_duration_minutes: Optional[float] = None
    delivery_fee: Optional[float] = None
    driver_earnings: Optional[float] = None

    assigned_at: Optional[str] = None
    picked_up_at: Optional[str] = None
    delivered_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    driver: Optional[Row] = None
    order: Optional[Row] = None
    extra: Row = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Row) -> Delivery:
        known, extra = _split_known(cls, row)
        known["status"] = _status_value(known.get("status")) or DeliveryStatus.AVAILABLE.value
        return cls(extra=extra, **known)

    def to_row(self) -> Row:
        row = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        row.update(self.extra)
        return row

    def merged(self, row: Row) -> Delivery:
        return Delivery.from_row({**self.to_row(), **row})


@dataclass
class Order:
    """
    One placed purchase, with whatever joins the query embedded.
    """
    id: str
    user_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    order_number: Optional[str] = None

    subtotal: float = 0.0
    delivery_fee: float = 0.0
    tax_amount: float = 0.0
    platform_fee: Optional[float] = None
    tip_amount: float = 0.0
    total: float = 0.0

    status: str = OrderStatus.PAYMENT_PENDING.value
    payment_status: Optional[str] = PaymentStatus.PAYMENT_PENDING.value
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    cancellation_reason: Optional[str] = None

    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    estimated_delivery_time: Optional[str] = None
    delivered_at: Optional[str] = None
    cancelled_at: Optional[str] = None

    # trusted-arrival window written by the backend
    eta_promised: Optional[str] = None
    eta_confidence_low: Optional[str] = None
    eta_confidence_high: Optional[str] = None

    restaurant: Optional[Row] = None
    order_items: List[LineItem] = field(default_factory=list)
    delivery: Optional[Delivery] = None
    extra: Row = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Row) -> Order:
        known, extra = _split_known(cls, row)
        known["status"] = normalize_order_status(known.get("status"))
        if "payment_status" in known:
            known["payment_status"] = _status_value(known["payment_status"])
        known["order_items"] = [
            item if isinstance(item, LineItem) else LineItem.from_row(item)
            for item in (known.get("order_items") or [])
        ]
        delivery = known.get("delivery")
        # one-to-one embeds sometimes come back as a single-element list
        if isinstance(delivery, list):
            delivery = delivery[0] if delivery else None
        if isinstance(delivery, dict):
            delivery = Delivery.from_row(delivery)
        known["delivery"] = delivery
        return cls(extra=extra, **known)

    def to_row(self) -> Row:
        row = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        row["order_items"] = [item.to_row() for item in self.order_items]
        row["delivery"] = self.delivery.to_row() if self.delivery else None
        row.update(self.extra)
        return row

    def merged(self, row: Row) -> Order:
        """
        Apply a partial row (e.g. a realtime record) on top of this order.
        Joined data the row does not mention is kept.
        """
        return Order.from_row({**self.to_row(), **row})

    @property
    def items(self) -> List[LineItem]:
        return self.order_items


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    ISO-8601 text (with or without a trailing Z) to an aware datetime.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
