"""
Purpose: Driver-side view of deliveries, kept fresh from the deliveries table.
What it does:
- mine: deliveries assigned to this driver that are still in progress
- available: unclaimed offers, oldest first on load
- apply_event(): folds one realtime change into both lists

Event rules (mine):
- INSERT: add when driver_id is this driver
- UPDATE: add when newly mine, drop when no longer mine, merge when still mine
- DELETE: remove by id

Event rules (available):
- INSERT/UPDATE: keep the row only while status == available (merge or prepend)
- DELETE: remove by id

Rule: No backend calls here. DeliverySync / driver_flow own the I/O.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from orders.models import Delivery, DeliveryStatus
from realtime.events import ChangeEvent, EventType

logger = logging.getLogger(__name__)


class DeliverySnapshotStore:

    def __init__(self, driver_id: Optional[str] = None, include_available: bool = False):
        self.driver_id = driver_id
        self.include_available = include_available
        self._mine: List[Delivery] = []
        self._available: List[Delivery] = []

    @property
    def mine(self) -> List[Delivery]:
        return list(self._mine)

    @property
    def available(self) -> List[Delivery]:
        return list(self._available)

    def find(self, delivery_id: str) -> Optional[Delivery]:
        for delivery in self._mine + self._available:
            if delivery.id == delivery_id:
                return delivery
        return None

    def replace_mine(self, deliveries: Iterable[Delivery]) -> None:
        self._mine = list(deliveries)

    def replace_available(self, deliveries: Iterable[Delivery]) -> None:
        self._available = list(deliveries)

    # ---------------- realtime ----------------

    def apply_event(self, event: ChangeEvent) -> None:
        if event.table != "deliveries":
            return
        if self.driver_id:
            self._mine = self._apply_mine(self._mine, event)
        if self.include_available:
            self._available = self._apply_available(self._available, event)

    def _apply_mine(self, current: List[Delivery], event: ChangeEvent) -> List[Delivery]:
        if event.event_type is EventType.DELETE:
            return _without(current, event.old.get("id"))

        row = event.new
        is_mine = row.get("driver_id") == self.driver_id

        if event.event_type is EventType.INSERT:
            return [Delivery.from_row(row)] + current if is_mine else current

        was_mine = any(d.id == row.get("id") for d in current)
        if is_mine and not was_mine:
            return [Delivery.from_row(row)] + current
        if was_mine and not is_mine:
            # reassigned or declined
            return _without(current, row.get("id"))
        if was_mine and is_mine:
            return _merged(current, row)
        return current

    def _apply_available(self, current: List[Delivery], event: ChangeEvent) -> List[Delivery]:
        if event.event_type is EventType.DELETE:
            return _without(current, event.old.get("id"))

        row = event.new
        if row.get("status") != DeliveryStatus.AVAILABLE.value:
            return _without(current, row.get("id"))
        if any(d.id == row.get("id") for d in current):
            return _merged(current, row)
        return [Delivery.from_row(row)] + current

    # ---------------- local writes ----------------

    def move_to_mine(self, delivery_id: str, driver_id: str, assigned_at: str) -> Delivery:
        """
        Reflect a successful claim before the realtime echo arrives.
        """
        source = self.find(delivery_id)
        row = source.to_row() if source else {"id": delivery_id}
        claimed = Delivery.from_row({
            **row,
            "driver_id": driver_id,
            "status": DeliveryStatus.ASSIGNED.value,
            "assigned_at": assigned_at,
        })
        self._available = _without(self._available, delivery_id)
        if any(d.id == delivery_id for d in self._mine):
            self._mine = [claimed if d.id == delivery_id else d for d in self._mine]
        else:
            self._mine = [claimed] + self._mine
        return claimed

    def patch(self, delivery_id: str, values: dict) -> None:
        patch = dict(values, id=delivery_id)
        self._mine = _merged(self._mine, patch)
        self._available = _merged(self._available, patch)


def _without(deliveries: List[Delivery], delivery_id) -> List[Delivery]:
    return [d for d in deliveries if d.id != delivery_id]


def _merged(deliveries: List[Delivery], row: dict) -> List[Delivery]:
    return [d.merged(row) if d.id == row.get("id") else d for d in deliveries]
