"""
Purpose: Decides which orders belong in an actor's view.
What it does:

- OrderScope: exactly one of user id / restaurant id / explicit order ids
- should_include_order(): the one visibility predicate, used by the bulk
  loader AND by every realtime event, so the two can never drift apart
- apply_scope(): narrows a bulk query server-side
- realtime_filter(): the single-predicate filter the realtime server understands

The realtime filter can only carry one equality / IN predicate, so the
restaurant payment-status allow-list is enforced client-side through
should_include_order() on every event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from backend.client import Query

from .models import Order
from .policy import RESTAURANT_VISIBLE_PAYMENT_STATUSES


@dataclass(frozen=True)
class OrderScope:
    """
    Whose orders a snapshot shows.
    """
    user_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    order_ids: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        chosen = sum(1 for v in (self.user_id, self.restaurant_id, self.order_ids) if v)
        if chosen != 1:
            raise ValueError("OrderScope needs exactly one of user_id, restaurant_id, order_ids")

    @classmethod
    def for_user(cls, user_id: str) -> OrderScope:
        return cls(user_id=user_id)

    @classmethod
    def for_restaurant(cls, restaurant_id: str) -> OrderScope:
        return cls(restaurant_id=restaurant_id)

    @classmethod
    def for_orders(cls, *order_ids: str) -> OrderScope:
        return cls(order_ids=tuple(order_ids))

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        if self.restaurant_id:
            return f"restaurant:{self.restaurant_id}"
        return "orders:" + ",".join(self.order_ids)


def restaurant_can_see(payment_status: Optional[str]) -> bool:
    return not payment_status or payment_status in RESTAURANT_VISIBLE_PAYMENT_STATUSES


def should_include_order(order: Order, scope: OrderScope) -> bool:
    if scope.user_id:
        return order.user_id == scope.user_id
    if scope.restaurant_id:
        return order.restaurant_id == scope.restaurant_id and restaurant_can_see(order.payment_status)
    return order.id in scope.order_ids


def apply_scope(query: Query, scope: OrderScope) -> Query:
    if scope.user_id:
        return query.eq("user_id", scope.user_id)
    if scope.restaurant_id:
        return query.eq("restaurant_id", scope.restaurant_id).in_(
            "payment_status", RESTAURANT_VISIBLE_PAYMENT_STATUSES
        )
    return query.in_("id", scope.order_ids)


def realtime_filter(scope: OrderScope) -> str:
    if scope.user_id:
        return f"user_id=eq.{scope.user_id}"
    if scope.restaurant_id:
        return f"restaurant_id=eq.{scope.restaurant_id}"
    return "id=in.(" + ",".join(scope.order_ids) + ")"
