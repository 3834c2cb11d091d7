"""
Purpose: Wallet reads and payout actions (thin layer over backend RPCs).
What it does:
- wallets / transactions for an actor
- payment proof and wallet top-up proof submission
- restaurant + driver payout initiate / finalize, manual marks, due retries
- payout balances, settlement, payment release

Balances and payout state are computed server-side. Every call here is keyed by
an idempotency token where the backend accepts one, so a retry with the same
key is safe. Failures are logged and returned, never raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.client import BackendClient, BackendError
from orders.models import parse_timestamp

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass(frozen=True)
class PayoutResult:
    ok: bool
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PaymentProofResult:
    ok: bool
    status: Optional[str] = None
    auto_verified: bool = False
    amount_diff: Optional[float] = None
    expected_amount: Optional[float] = None
    reported_amount: Optional[float] = None
    txn_id_duplicate: bool = False
    mismatch_reasons: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_rpc(cls, data: Any) -> PaymentProofResult:
        if isinstance(data, list):
            data = data[0] if data else {}
        if isinstance(data, str):
            return cls(ok=True, status=data)
        data = data or {}
        return cls(
            ok=True,
            status=data.get("status"),
            auto_verified=bool(data.get("auto_verified")),
            amount_diff=data.get("amount_diff"),
            expected_amount=data.get("expected_amount"),
            reported_amount=data.get("reported_amount"),
            txn_id_duplicate=bool(data.get("txn_id_duplicate")),
            mismatch_reasons=list(data.get("mismatch_reasons") or []),
        )


@dataclass(frozen=True)
class RetrySummary:
    restaurant_retried: int = 0
    driver_retried: int = 0
    errors: List[str] = field(default_factory=list)


def _millis() -> int:
    return int(time.time() * 1000)


class WalletActions:
    """
    All wallet/payout calls for one authenticated client.

    `key_clock` feeds the generated manual/retry idempotency keys.
    """

    def __init__(self, client: BackendClient, key_clock: Callable[[], int] = _millis):
        self.client = client
        self.key_clock = key_clock

    # ---------------- reads ----------------

    def wallets_for_user(self, user_id: str) -> List[Row]:
        return self._read(
            "wallets",
            lambda: self.client.table("wallets").select("*").eq("user_id", user_id).fetch(),
        )

    def wallet_transactions(self, wallet_id: str, *, status: Optional[str] = None,
                            txn_type: Optional[str] = None, limit: Optional[int] = None) -> List[Row]:
        query = (
            self.client.table("wallet_transactions")
            .select("*")
            .eq("wallet_id", wallet_id)
            .order("created_at", ascending=False)
        )
        if status:
            query = query.eq("status", status)
        if txn_type:
            query = query.eq("type", txn_type)
        if limit:
            query = query.limit(limit)
        return self._read("wallet transactions", query.fetch)

    def transactions_for_user(self, user_id: str, wallet_type: Optional[str] = None,
                              limit: int = 50) -> List[Row]:
        return self._read_rpc("list_wallet_transactions_for_user", {
            "p_user_id": user_id,
            "p_wallet_type": wallet_type,
            "p_limit": limit,
        })

    def payout_balances(self) -> List[Row]:
        return self._read_rpc("list_payout_balances")

    def restaurant_payables(self, *, status: Optional[str] = None, restaurant_id: Optional[str] = None,
                            payout_ref: Optional[str] = None, created_after: Optional[str] = None,
                            created_before: Optional[str] = None) -> List[Row]:
        return self._read_rpc("list_restaurant_payables", {
            "p_status": status,
            "p_restaurant_id": restaurant_id,
            "p_ref": payout_ref,
            "p_created_after": created_after,
            "p_created_before": created_before,
        })

    def driver_payables(self, *, status: Optional[str] = None, driver_id: Optional[str] = None,
                        payout_ref: Optional[str] = None, created_after: Optional[str] = None,
                        created_before: Optional[str] = None) -> List[Row]:
        return self._read_rpc("list_driver_payables", {
            "p_status": status,
            "p_driver_id": driver_id,
            "p_ref": payout_ref,
            "p_created_after": created_after,
            "p_created_before": created_before,
        })

    # ---------------- customer payments ----------------

    def submit_payment_proof(self, order_id: str, txn_id: str, reported_amount: float,
                             receipt_url: Optional[str] = None,
                             paid_at: Optional[str] = None) -> PaymentProofResult:
        """
        Status comes back paid (auto-verified) or paid_pending_review (admin queue).
        """
        try:
            data = self.client.rpc("submit_payment_proof", {
                "p_order_id": order_id,
                "p_txn_id": txn_id,
                "p_reported_amount": reported_amount,
                "p_receipt_url": receipt_url,
                "p_paid_at": paid_at,
            })
        except BackendError as exc:
            logger.error("submit_payment_proof failed for %s: %s", order_id, exc)
            return PaymentProofResult(ok=False, error=exc.message)
        result = PaymentProofResult.from_rpc(data)
        if result.mismatch_reasons:
            logger.info("Payment proof for %s needs review: %s", order_id, ", ".join(result.mismatch_reasons))
        return result

    def submit_topup_proof(self, user_id: str, amount: float, txn_id: str,
                           receipt_url: Optional[str] = None) -> PayoutResult:
        try:
            data = self.client.rpc("submit_wallet_topup_proof", {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_txn_id": txn_id,
                "p_receipt_url": receipt_url,
            })
        except BackendError as exc:
            logger.error("Top-up proof failed for %s: %s", user_id, exc)
            return PayoutResult(False, error=exc.message)
        status = data.get("status") if isinstance(data, dict) else data
        return PayoutResult(True, status=status)

    def release_order_payment(self, order_id: str) -> Optional[Row]:
        """
        Returns {commission, net} or None on failure.
        """
        try:
            return self.client.rpc("release_order_payment", {"p_order_id": order_id})
        except BackendError as exc:
            logger.error("Error releasing payment for %s: %s", order_id, exc)
            return None

    # ---------------- restaurant payouts ----------------

    def initiate_restaurant_payout(self, order_id: str, idempotency_key: str,
                                   payout_ref: Optional[str] = None) -> PayoutResult:
        return self._call("initiate_restaurant_payout", {
            "p_order_id": order_id,
            "p_idempotency_key": idempotency_key,
            "p_payout_ref": payout_ref or idempotency_key,
        }, default_status="initiated")

    def finalize_restaurant_payout(self, order_id: str, idempotency_key: str, success: bool,
                                   payout_ref: Optional[str] = None,
                                   error_note: Optional[str] = None) -> PayoutResult:
        return self._call("finalize_restaurant_payout", {
            "p_order_id": order_id,
            "p_idempotency_key": idempotency_key,
            "p_success": success,
            "p_payout_ref": payout_ref or idempotency_key,
            "p_error": error_note,
        })

    def mark_restaurant_payout_manual(self, order_id: str, success: bool,
                                      payout_ref: Optional[str] = None,
                                      error_note: Optional[str] = None) -> PayoutResult:
        key = f"manual_rest_{self.key_clock()}"
        return self.finalize_restaurant_payout(order_id, key, success, payout_ref, error_note)

    def retry_restaurant_payout(self, order_id: str, payout_ref: Optional[str] = None) -> PayoutResult:
        key = f"retry_rest_{self.key_clock()}"
        return self.initiate_restaurant_payout(order_id, key, payout_ref)

    # ---------------- driver payouts ----------------

    def initiate_driver_payout(self, order_id: str, driver_id: str, idempotency_key: str,
                               payout_ref: Optional[str] = None) -> PayoutResult:
        return self._call("initiate_driver_payout", {
            "p_order_id": order_id,
            "p_driver_id": driver_id,
            "p_idempotency_key": idempotency_key,
            "p_payout_ref": payout_ref or idempotency_key,
        }, default_status="initiated")

    def finalize_driver_payout(self, order_id: str, idempotency_key: str, success: bool,
                               payout_ref: Optional[str] = None,
                               error_note: Optional[str] = None) -> PayoutResult:
        return self._call("finalize_driver_payout", {
            "p_order_id": order_id,
            "p_idempotency_key": idempotency_key,
            "p_success": success,
            "p_payout_ref": payout_ref or idempotency_key,
            "p_error": error_note,
        })

    def mark_driver_payout_manual(self, order_id: str, driver_id: str, success: bool,
                                  payout_ref: Optional[str] = None,
                                  error_note: Optional[str] = None) -> PayoutResult:
        # driver payouts must be initiated before they can be finalized
        key = f"manual_drv_{self.key_clock()}"
        ref = payout_ref or key
        initiated = self.initiate_driver_payout(order_id, driver_id, key, ref)
        if not initiated.ok:
            return initiated
        return self.finalize_driver_payout(order_id, key, success, ref, error_note)

    def retry_driver_payout(self, order_id: str, driver_id: str,
                            payout_ref: Optional[str] = None) -> PayoutResult:
        key = f"retry_drv_{self.key_clock()}"
        return self.initiate_driver_payout(order_id, driver_id, key, payout_ref)

    def retry_due_payouts(self, now: Optional[datetime] = None) -> RetrySummary:
        """
        Re-initiate failed payouts whose next retry time has passed (or is unset).
        """
        now = now or datetime.now(timezone.utc)
        errors: List[str] = []
        restaurant_retried = driver_retried = 0

        for payable in self.restaurant_payables(status="failed"):
            if _not_due(payable.get("restaurant_payout_next_retry_at"), now):
                continue
            result = self.retry_restaurant_payout(payable["order_id"], payable.get("payout_ref"))
            if result.ok:
                restaurant_retried += 1
            else:
                errors.append(result.error or "restaurant_retry_failed")

        for payable in self.driver_payables(status="failed"):
            if _not_due(payable.get("driver_payout_next_retry_at"), now):
                continue
            if not payable.get("driver_id"):
                errors.append(f"missing_driver:{payable.get('order_id')}")
                continue
            result = self.retry_driver_payout(payable["order_id"], payable["driver_id"], payable.get("payout_ref"))
            if result.ok:
                driver_retried += 1
            else:
                errors.append(result.error or "driver_retry_failed")

        if errors:
            logger.warning("Payout retry finished with %d errors", len(errors))
        return RetrySummary(restaurant_retried, driver_retried, errors)

    # ---------------- settlement ----------------

    def settle_wallet_balance(self, user_id: str, wallet_type: str,
                              instapay_handle: Optional[str] = None) -> Optional[float]:
        try:
            settled = self.client.rpc("settle_wallet_balance", {
                "p_user_id": user_id,
                "p_wallet_type": wallet_type,
                "p_instapay_handle": instapay_handle,
            })
        except BackendError as exc:
            logger.error("settle_wallet_balance failed for %s/%s: %s", user_id, wallet_type, exc)
            return None
        return float(settled) if settled is not None else None

    # ---------------- helpers ----------------

    def _call(self, rpc_name: str, params: Row, default_status: Optional[str] = None) -> PayoutResult:
        try:
            data = self.client.rpc(rpc_name, params)
        except BackendError as exc:
            logger.error("%s failed for %s: %s", rpc_name, params.get("p_order_id"), exc)
            return PayoutResult(False, error=exc.message)
        status = data if isinstance(data, str) else default_status
        return PayoutResult(True, status=status)

    def _read(self, what: str, fetch: Callable[[], List[Row]]) -> List[Row]:
        try:
            return fetch()
        except BackendError as exc:
            logger.error("Error fetching %s: %s", what, exc)
            return []

    def _read_rpc(self, rpc_name: str, params: Optional[Row] = None) -> List[Row]:
        try:
            return self.client.rpc(rpc_name, params) or []
        except BackendError as exc:
            logger.warning("%s error: %s", rpc_name, exc)
            return []


def _not_due(next_retry_at: Any, now: datetime) -> bool:
    moment = parse_timestamp(next_retry_at)
    return moment is not None and moment > now
