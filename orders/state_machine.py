"""
Purpose: Order status state machine and the write-side transition guard.
What it does:

payment_pending -> confirmed -> preparing -> ready -> picked_up -> on_the_way -> delivered
cancelled is reachable from any non-terminal state.

OrderStatusGuard.update_order_status() reads the order once and refuses any change
to a delivered or cancelled order, then checks the two correctness-critical
preconditions before writing:
- payment gate: confirmed..on_the_way need payment_status in {paid, captured}
- delivery gate: delivered needs the delivery row to already be delivered
and queues a refund review when an order is cancelled.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from backend.client import BackendClient, BackendError

from .models import DeliveryStatus, OrderStatus, normalize_order_status
from .policy import (
    APPROVED_PAYMENT_STATUSES,
    DEFAULT_CANCELLATION_REASON,
    ORDER_FLOW,
    PAYMENT_GATED_STATUSES,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = frozenset(s.value for s in OrderStatus)


class OrderStateException(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def requires_payment_approval(status: str) -> bool:
    return status in PAYMENT_GATED_STATUSES


def can_transition(current: str, new: str) -> bool:
    """
    Structural check only (ignores payment and delivery state).
    Moves forward along ORDER_FLOW, or to cancelled from any non-terminal state.
    """
    if is_terminal(current) or new not in _KNOWN_STATUSES:
        return False
    if new == OrderStatus.CANCELLED.value:
        return True
    if current not in ORDER_FLOW or new not in ORDER_FLOW:
        return False
    return ORDER_FLOW.index(new) > ORDER_FLOW.index(current)


def next_status(current: str) -> str:
    """
    The following step on the happy path.
    """
    if current not in ORDER_FLOW or is_terminal(current):
        raise OrderStateException(f"No next status after {current}")
    return ORDER_FLOW[ORDER_FLOW.index(current) + 1]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderStatusGuard:
    """
    Validates a requested status change, then forwards it to the backend.

    Never raises to the caller: blocked transitions and backend failures are
    logged and reported as False. Concurrent writers are last-write-wins; the
    snapshot re-syncs from the next realtime event.
    """

    def __init__(self, client: BackendClient, clock: Callable[[], str] = _utc_now_iso):
        self.client = client
        self.clock = clock

    def update_order_status(self, order_id: str, new_status: str,
                            cancellation_reason: Optional[str] = None) -> bool:
        new_status = new_status.value if isinstance(new_status, OrderStatus) else new_status
        if new_status not in _KNOWN_STATUSES:
            logger.warning("Unknown status %s requested for order %s", new_status, order_id)
            return False

        try:
            current = self._current_order(order_id)
            if current is None:
                return False

            if is_terminal(normalize_order_status(current.get("status"))):
                logger.warning("Order %s is already %s; refusing %s", order_id, current.get("status"), new_status)
                return False

            if new_status == OrderStatus.DELIVERED.value and not self._delivery_completed(order_id):
                return False

            if requires_payment_approval(new_status) and not self._payment_approved(order_id, current, new_status):
                return False

            updates = {"status": new_status, "updated_at": self.clock()}
            if new_status == OrderStatus.CANCELLED.value:
                updates["cancellation_reason"] = cancellation_reason or DEFAULT_CANCELLATION_REASON

            self.client.table("orders").eq("id", order_id).update(updates)

            # restaurant rejected / cancelled: queue the refund for admin review
            if new_status == OrderStatus.CANCELLED.value:
                self.client.rpc("enqueue_order_refund", {
                    "p_order_id": order_id,
                    "p_reason": updates["cancellation_reason"],
                })

            logger.info("Order %s moved to %s", order_id, new_status)
            return True
        except BackendError as exc:
            logger.error("Error updating order %s to %s: %s", order_id, new_status, exc)
            return False

    # --- preconditions ---

    def _delivery_completed(self, order_id: str) -> bool:
        try:
            delivery = (
                self.client.table("deliveries")
                .select("status")
                .eq("order_id", order_id)
                .maybe_single()
            )
        except BackendError as exc:
            logger.warning("Cannot verify delivery before marking %s delivered: %s", order_id, exc)
            return False

        # no delivery row (e.g. pickup orders) does not block
        if delivery and delivery.get("status") != DeliveryStatus.DELIVERED.value:
            logger.warning(
                "Attempted to mark %s delivered before driver completed handoff (delivery status %s)",
                order_id, delivery.get("status"),
            )
            return False
        return True

    def _current_order(self, order_id: str) -> Optional[dict]:
        try:
            return (
                self.client.table("orders")
                .select("status,payment_status")
                .eq("id", order_id)
                .single()
            )
        except BackendError as exc:
            logger.warning("Cannot read current status of %s: %s", order_id, exc)
            return None

    def _payment_approved(self, order_id: str, current: dict, new_status: str) -> bool:
        if current.get("payment_status") not in APPROVED_PAYMENT_STATUSES:
            logger.warning(
                "Cannot move %s to %s until payment is approved (payment status %s)",
                order_id, new_status, current.get("payment_status"),
            )
            return False
        return True
