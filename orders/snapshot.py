"""
Purpose: In-memory, eventually-consistent view of one actor's orders.
What it does:
- Holds the list of Orders (newest created first)
- replace_all(): seeds the view from a bulk load
- apply_order_event(): INSERT / UPDATE / DELETE on the orders table
- apply_delivery_event(): folds a delivery row into its order's `delivery` field

Rule: the store owns membership; should_include_order() decides it. No I/O here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from realtime.events import ChangeEvent, EventType

from .models import Delivery, Order
from .visibility import OrderScope, should_include_order

logger = logging.getLogger(__name__)


@dataclass
class OrderSnapshotStore:
    """
    Owned by exactly one sync controller; never shared between screens.

    Realtime inserts are prepended rather than re-sorted, so the
    newest-first order is approximate once events start flowing.
    """
    scope: OrderScope
    _orders: List[Order] = field(default_factory=list)

    # --- Public API ---

    @property
    def orders(self) -> List[Order]:
        return list(self._orders)

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return any(order.id == order_id for order in self._orders)

    def get(self, order_id: str) -> Optional[Order]:
        for order in self._orders:
            if order.id == order_id:
                return order
        return None

    def replace_all(self, orders: Iterable[Order]) -> None:
        kept = [order for order in orders if should_include_order(order, self.scope)]
        kept.sort(key=lambda order: order.created_at or "", reverse=True)
        self._orders = kept

    def apply_order_event(self, event: ChangeEvent) -> None:
        if event.event_type is EventType.DELETE:
            self._remove(event.old.get("id"))
            return

        if not event.new.get("id"):
            return

        existing = self.get(event.new["id"])
        candidate = existing.merged(event.new) if existing else Order.from_row(event.new)
        visible = should_include_order(candidate, self.scope)

        if existing is None:
            if visible:
                self._orders.insert(0, candidate)
                logger.debug("order %s entered snapshot %s", candidate.id, self.scope.key)
            return

        if not visible:
            self._remove(candidate.id)
            logger.debug("order %s left snapshot %s", candidate.id, self.scope.key)
            return

        self._replace(candidate)

    def apply_delivery_event(self, event: ChangeEvent) -> None:
        """
        Overwrite only the `delivery` sub-field, so replays and cross-table
        arrival order do not matter.
        """
        if event.event_type is not EventType.UPDATE:
            return
        order_id = event.new.get("order_id")
        if not order_id:
            return
        order = self.get(order_id)
        if order is None:
            return
        if order.delivery is not None and order.delivery.id == event.new.get("id"):
            order.delivery = order.delivery.merged(event.new)
        else:
            order.delivery = Delivery.from_row(event.new)

    # --- internals ---

    def _remove(self, order_id: Optional[str]) -> None:
        if order_id is None:
            return
        self._orders = [order for order in self._orders if order.id != order_id]

    def _replace(self, updated: Order) -> None:
        self._orders = [updated if order.id == updated.id else order for order in self._orders]
