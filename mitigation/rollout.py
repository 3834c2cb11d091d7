"""
Purpose: Trusted-arrival rollout gate and its daily metrics.
What it does:
- RolloutConfig: observe-only flag, per-restaurant/city allow-lists, kill-switch thresholds
- RolloutRepository: read/upsert the single `trusted_arrival` config row,
  read metrics_trusted_arrival_view, trigger the admin RPCs

A missing or unreadable config means observe-only with empty allow-lists:
nothing is offered until an admin opts entities in.
Thresholds are enforced server-side by apply_trusted_kill_switch, which edits
the allow-lists; clients only read them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from backend.client import BackendClient, BackendError

logger = logging.getLogger(__name__)

CONFIG_TABLE = "trusted_rollout_config"
CONFIG_KEY = "trusted_arrival"
METRICS_VIEW = "metrics_trusted_arrival_view"

DEFAULT_KILL_SWITCH_ON_TIME = 85
DEFAULT_KILL_SWITCH_REROUTE_RATE = 20
DEFAULT_KILL_SWITCH_CREDIT_BUDGET = 50


@dataclass(frozen=True)
class RolloutConfig:
    observe_only: bool = True
    substitutions_enabled_for: Tuple[str, ...] = ()
    reroute_enabled_for: Tuple[str, ...] = ()
    kill_switch_on_time: Optional[float] = None
    kill_switch_reroute_rate: Optional[float] = None
    kill_switch_credit_budget: Optional[float] = None

    @classmethod
    def observe_only_default(cls) -> RolloutConfig:
        return cls()

    @classmethod
    def from_json(cls, config: Dict[str, Any]) -> RolloutConfig:
        observe_only = config.get("observe_only")
        return cls(
            observe_only=True if observe_only is None else bool(observe_only),
            substitutions_enabled_for=tuple(config.get("substitutions_enabled_for") or ()),
            reroute_enabled_for=tuple(config.get("reroute_enabled_for") or ()),
            kill_switch_on_time=config.get("kill_switch_on_time"),
            kill_switch_reroute_rate=config.get("kill_switch_reroute_rate"),
            kill_switch_credit_budget=config.get("kill_switch_credit_budget"),
        )

    def to_json(self) -> Dict[str, Any]:
        """
        Payload written back on upsert; unset thresholds take the defaults.
        """
        return {
            "observe_only": self.observe_only,
            "substitutions_enabled_for": list(self.substitutions_enabled_for),
            "reroute_enabled_for": list(self.reroute_enabled_for),
            "kill_switch_on_time": _or_default(self.kill_switch_on_time, DEFAULT_KILL_SWITCH_ON_TIME),
            "kill_switch_reroute_rate": _or_default(self.kill_switch_reroute_rate, DEFAULT_KILL_SWITCH_REROUTE_RATE),
            "kill_switch_credit_budget": _or_default(self.kill_switch_credit_budget, DEFAULT_KILL_SWITCH_CREDIT_BUDGET),
        }

    def reroute_enabled(self, *entity_ids: Optional[str]) -> bool:
        return any(e in self.reroute_enabled_for for e in entity_ids if e)

    def substitutions_enabled(self, *entity_ids: Optional[str]) -> bool:
        return any(e in self.substitutions_enabled_for for e in entity_ids if e)


def _or_default(value, default):
    return default if value is None else value


@dataclass(frozen=True)
class TrustedArrivalMetrics:
    restaurant_id: str
    metric_date: str
    on_time_pct: Optional[float] = None
    reroute_rate: Optional[float] = None
    substitution_acceptance: Optional[float] = None
    credit_cost: Optional[float] = None
    affected_orders: Optional[int] = None
    csat_affected: Optional[float] = None
    csat_baseline: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> TrustedArrivalMetrics:
        names = {
            "restaurant_id", "metric_date", "on_time_pct", "reroute_rate",
            "substitution_acceptance", "credit_cost", "affected_orders",
            "csat_affected", "csat_baseline",
        }
        known = {k: v for k, v in row.items() if k in names}
        extra = {k: v for k, v in row.items() if k not in names}
        return cls(extra=extra, **known)


class RolloutRepository:

    def __init__(self, client: BackendClient):
        self.client = client

    def get_config(self) -> RolloutConfig:
        """
        Always returns a config; any failure degrades to observe-only.
        """
        try:
            row = (
                self.client.table(CONFIG_TABLE)
                .select("config")
                .eq("key", CONFIG_KEY)
                .maybe_single()
            )
        except BackendError as exc:
            logger.warning("Could not read rollout config, defaulting to observe-only: %s", exc)
            return RolloutConfig.observe_only_default()
        if not row or not row.get("config"):
            return RolloutConfig.observe_only_default()
        return RolloutConfig.from_json(row["config"])

    def upsert_config(self, config: RolloutConfig) -> bool:
        try:
            self.client.table(CONFIG_TABLE).upsert(
                {"key": CONFIG_KEY, "config": config.to_json()},
                on_conflict="key",
            )
        except BackendError as exc:
            logger.error("Error upserting rollout config: %s", exc)
            return False
        return True

    def get_metrics(self, days: int = 7, restaurant_id: Optional[str] = None,
                    today: Optional[date] = None) -> List[TrustedArrivalMetrics]:
        if days not in (7, 30):
            raise ValueError("days must be 7 or 30")
        since = (today or date.today()) - timedelta(days=days)
        query = (
            self.client.table(METRICS_VIEW)
            .select("*")
            .gte("metric_date", since.isoformat())
            .order("metric_date", ascending=False)
        )
        if restaurant_id:
            query = query.eq("restaurant_id", restaurant_id)
        try:
            rows = query.fetch()
        except BackendError as exc:
            logger.error("Error fetching trusted arrival metrics: %s", exc)
            return []
        return [TrustedArrivalMetrics.from_row(row) for row in rows]

    def populate_metrics(self) -> bool:
        return self._run("populate_metrics_trusted_arrival")

    def apply_kill_switch(self) -> bool:
        return self._run("apply_trusted_kill_switch")

    def _run(self, rpc_name: str) -> bool:
        try:
            self.client.rpc(rpc_name)
        except BackendError as exc:
            logger.error("Error running %s: %s", rpc_name, exc)
            return False
        return True
