"""
Purpose: Plan B for a late kitchen: backup restaurants and the reroute itself.
What it does:
- backup_candidates(): active backups for a restaurant, by priority, currently open
- backup_plan(): first candidate with a fresh ETA label
- log_reroute_decision(): records approve/decline/cancel (idempotent per decision)
- reroute_order(): server-side transactional reroute, then records the result
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from backend.client import BackendClient, BackendError
from routing.eta_service import backup_eta_band

from .events import EventLog

logger = logging.getLogger(__name__)

DECISIONS = ("approve", "decline", "cancel")


@dataclass(frozen=True)
class BackupPlan:
    restaurant_id: str
    restaurant_name: str
    eta_label: str
    priority: Optional[int] = None


@dataclass(frozen=True)
class RerouteResult:
    ok: bool
    new_order_id: Optional[str] = None
    reason: Optional[str] = None


def backup_candidates(client: BackendClient, restaurant_id: str) -> List[Dict[str, Any]]:
    try:
        rows = (
            client.table("backup_restaurants")
            .select("*, backup_restaurant:backup_restaurant_id(*)")
            .eq("restaurant_id", restaurant_id)
            .eq("is_active", True)
            .order("priority", ascending=True)
            .fetch()
        )
    except BackendError as exc:
        logger.error("Error fetching backup candidates for %s: %s", restaurant_id, exc)
        return []
    return [row for row in rows if (row.get("backup_restaurant") or {}).get("is_open")]


def backup_plan(client: BackendClient, restaurant_id: Optional[str]) -> Optional[BackupPlan]:
    if not restaurant_id:
        return None
    candidates = backup_candidates(client, restaurant_id)
    if not candidates:
        return None
    first = candidates[0]
    backup = first["backup_restaurant"]
    band = backup_eta_band(backup.get("delivery_time"), backup.get("rating"))
    return BackupPlan(
        restaurant_id=backup["id"],
        restaurant_name=backup.get("name") or "",
        eta_label=band.label,
        priority=first.get("priority"),
    )


def reroute_decision_key(order_id: str, backup_restaurant_id: Optional[str], decision: str) -> str:
    return f"reroute_{order_id}_{backup_restaurant_id or 'none'}_{decision}"


def log_reroute_decision(events: EventLog, order_id: str, backup_restaurant_id: Optional[str],
                         decision: str, reason: Optional[str] = None,
                         actor: Optional[str] = None) -> None:
    if decision not in DECISIONS:
        raise ValueError(f"Unknown reroute decision {decision}")
    payload = {"backup_restaurant_id": backup_restaurant_id, "decision": decision, "reason": reason}
    key = reroute_decision_key(order_id, backup_restaurant_id, decision)
    events.create_delivery_event(
        order_id, "auto_reroute_decision", payload=payload, idempotency_key=key,
    )
    events.log_audit("auto_reroute", "orders", order_id, {**payload, "idempotency_key": key}, actor)


def reroute_order(client: BackendClient, events: EventLog, order_id: str,
                  backup_restaurant_id: str, idempotency_key: Optional[str] = None) -> RerouteResult:
    """
    Locking, payment transfer, delivery reassignment and dedup all happen in
    reroute_order_rpc. Returns the new order id on success.
    """
    key = idempotency_key or f"reroute_{order_id}_{backup_restaurant_id}"
    try:
        new_order_id = client.rpc("reroute_order_rpc", {
            "p_order_id": order_id,
            "p_backup_restaurant_id": backup_restaurant_id,
            "p_idempotency_key": key,
        })
    except BackendError as exc:
        logger.error("Reroute RPC failed for %s: %s", order_id, exc)
        return RerouteResult(False, reason="reroute_failed")
    if not new_order_id:
        logger.error("Reroute RPC returned no order for %s", order_id)
        return RerouteResult(False, reason="reroute_failed")

    new_order_id = str(new_order_id)
    events.create_delivery_event(
        order_id, "auto_reroute_performed",
        payload={"new_order_id": new_order_id, "backup_restaurant_id": backup_restaurant_id},
        idempotency_key=key,
    )
    events.log_audit(
        "auto_reroute_performed", "orders", order_id,
        {"new_order_id": new_order_id, "idempotency_key": key},
    )
    return RerouteResult(True, new_order_id=new_order_id)
