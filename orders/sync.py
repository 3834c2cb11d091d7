"""
Purpose: Keeps one actor's order snapshot fresh (bulk load + realtime).
What it does:
- load(): one bulk query for the scope, newest first
- start(): load, then subscribe one channel to orders (scoped) and deliveries (unscoped)
- close(): leave the channel; the snapshot stays readable
- update_order_status(): write path through the transition guard

Failure policy:
- bulk load fails  -> error "Failed to load orders", no subscription attempted
- subscribe fails  -> error "Failed to set up real-time updates", snapshot kept
"""

from __future__ import annotations

import logging
from typing import List, Optional

from backend.client import BackendClient, BackendError
from realtime.channel import RealtimeChannel, RealtimeTransport
from realtime.events import ChangeEvent

from .models import Order
from .policy import ORDER_SNAPSHOT_COLUMNS
from .snapshot import OrderSnapshotStore
from .state_machine import OrderStatusGuard
from .visibility import OrderScope, apply_scope, realtime_filter

logger = logging.getLogger(__name__)

LOAD_ERROR = "Failed to load orders"
SUBSCRIBE_ERROR = "Failed to set up real-time updates"


class OrderSync:
    """
    Owns a single OrderSnapshotStore and the channel feeding it.
    """

    def __init__(self, client: BackendClient, transport: RealtimeTransport, scope: OrderScope,
                 *, channel_name: str = "orders-changes", guard: Optional[OrderStatusGuard] = None):
        self.client = client
        self.transport = transport
        self.scope = scope
        self.channel_name = channel_name
        self.store = OrderSnapshotStore(scope=scope)
        self.guard = guard or OrderStatusGuard(client)
        self.channel: Optional[RealtimeChannel] = None
        self.loading = False
        self.error: Optional[str] = None

    @property
    def orders(self) -> List[Order]:
        return self.store.orders

    # ---------------- lifecycle ----------------

    def load(self) -> bool:
        self.loading = True
        try:
            query = apply_scope(self.client.table("orders").select(ORDER_SNAPSHOT_COLUMNS), self.scope)
            rows = query.order("created_at", ascending=False).fetch()
            self.store.replace_all(Order.from_row(row) for row in rows)
            self.error = None
            return True
        except BackendError as exc:
            logger.error("Error loading initial orders for %s: %s", self.scope.key, exc)
            self.error = LOAD_ERROR
            return False
        finally:
            self.loading = False

    refetch = load

    def start(self) -> bool:
        if not self.load():
            return False

        channel = RealtimeChannel(self.channel_name, self.transport)
        channel.on("orders", self._on_order_change, filter=realtime_filter(self.scope))
        # deliveries are not scoped: a delivery change must reach its order whoever is watching
        channel.on("deliveries", self._on_delivery_change)
        try:
            channel.subscribe()
        except Exception as exc:
            logger.error("Error setting up realtime subscription for %s: %s", self.scope.key, exc)
            self.error = SUBSCRIBE_ERROR
            return False

        self.channel = channel
        return True

    def close(self) -> None:
        if self.channel is not None:
            self.channel.unsubscribe()
            self.channel = None

    def __enter__(self) -> OrderSync:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---------------- writes ----------------

    def update_order_status(self, order_id: str, new_status: str,
                            cancellation_reason: Optional[str] = None) -> bool:
        # no optimistic update: the realtime echo refreshes the snapshot
        return self.guard.update_order_status(order_id, new_status, cancellation_reason)

    # ---------------- realtime handlers ----------------

    def _on_order_change(self, event: ChangeEvent) -> None:
        self.store.apply_order_event(event)

    def _on_delivery_change(self, event: ChangeEvent) -> None:
        self.store.apply_delivery_event(event)
