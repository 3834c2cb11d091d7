"""
Purpose: Central configuration for delay detection and mitigation offers.
What it does:

Stores all tunable thresholds used while an order is being tracked:

CREDIT_AMOUNT = 10
DRIVER_STALE_MINUTES = 5
ETA_BAND_ALERT_MINUTES = 35
STALE_ORDER_AGE_MINUTES = 90

plus the trusted-ETA display thresholds (band width, freshness, lead).

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class DelayPolicy:
    """
    Central configuration for delay mitigation.
    """

    # --- Credit offer ---
    # Wallet credit granted once per order when the customer accepts the delay.
    credit_amount: float = 10.0
    credit_reason: str = "delay_credit"

    # --- Delay detection ---
    # Driver phase counts as delayed when the courier's last location ping is older than this.
    driver_stale_minutes: int = 5

    # Order statuses where the kitchen owns the delay.
    prep_phase_statuses: Tuple[str, ...] = field(
        default_factory=lambda: ("payment_pending", "confirmed", "preparing", "ready")
    )
    # Order statuses where the courier owns the delay.
    driver_phase_statuses: Tuple[str, ...] = field(
        default_factory=lambda: ("picked_up", "on_the_way")
    )

    # --- ETA alerts ---
    eta_band_alert_minutes: int = 35
    stale_order_age_minutes: int = 90

    # --- Trusted ETA display ---
    trusted_max_band_minutes: int = 20
    trusted_max_age_minutes: int = 30
    trusted_min_lead_minutes: int = 2

    # Write queue retry schedule (milliseconds).
    retry_base_ms: int = 500
    retry_max_ms: int = 8000
    retry_max_attempts: int = 6

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.credit_amount <= 0:
            raise ValueError("credit_amount must be > 0")

        if self.driver_stale_minutes <= 0:
            raise ValueError("driver_stale_minutes must be > 0")

        if set(self.prep_phase_statuses) & set(self.driver_phase_statuses):
            raise ValueError("prep and driver phases must not overlap")

        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")

        if self.retry_base_ms <= 0 or self.retry_max_ms < self.retry_base_ms:
            raise ValueError("retry_max_ms must be >= retry_base_ms > 0")


def default_delay_policy() -> DelayPolicy:
    """
    Convenience factory for the default policy.
    """
    p = DelayPolicy()
    p.validate()
    return p
