"""
Purpose: Central configuration for ETA estimation (single source of truth).
What it does:

Stores all tunable constants used by routing.eta_service:

COURIER_SPEED_KMH = 25
DEFAULT_DISTANCE_KM = 3
MIN_TRAVEL_MINUTES = 8
BASE_ESTIMATE_SHARE = 0.4

plus the traffic / weather multipliers for the distance estimate and
the weather factors used by the trusted-arrival band.

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class EtaPolicy:
    """
    Central configuration for travel-time estimation.
    """

    # --- Courier baseline ---
    # Urban courier speed before any traffic slowdown.
    courier_speed_kmh: float = 25.0

    # Used when either endpoint has no coordinates.
    default_distance_km: float = 3.0

    # Distance-derived estimate never goes below this.
    min_travel_minutes: int = 8

    # Share of the restaurant's declared delivery time that acts as a lower bound.
    base_estimate_share: float = 0.4

    # --- Multipliers ---
    # Speed is divided by the traffic multiplier.
    traffic_multipliers: Dict[str, float] = field(
        default_factory=lambda: {"light": 1.0, "moderate": 1.15, "heavy": 1.3}
    )

    # Travel minutes are multiplied by the weather multiplier.
    weather_multipliers: Dict[str, float] = field(
        default_factory=lambda: {"normal": 1.0, "rain": 1.1, "storm": 1.25}
    )

    # --- Trusted arrival band ---
    # The band uses slightly harsher weather factors than the point estimate.
    band_weather_factors: Dict[str, float] = field(
        default_factory=lambda: {"normal": 1.0, "rain": 1.12, "storm": 1.3}
    )
    band_min_travel_minutes: int = 5
    band_default_buffer_minutes: int = 5
    band_p90_cushion_minutes: int = 3
    band_high_cushion_minutes: int = 4
    band_max_width_minutes: int = 25
    trusted_min_reliability: float = 0.9
    stale_reliability_below: float = 0.75
    trusted_max_weather_factor: float = 1.15

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.courier_speed_kmh <= 0:
            raise ValueError("courier_speed_kmh must be > 0")

        if self.default_distance_km < 0:
            raise ValueError("default_distance_km must be >= 0")

        if self.min_travel_minutes < 0:
            raise ValueError("min_travel_minutes must be >= 0")

        for name, value in self.traffic_multipliers.items():
            if value < 1.0:
                raise ValueError(f"traffic multiplier '{name}' must be >= 1.0")

        for name, value in self.weather_multipliers.items():
            if value < 1.0:
                raise ValueError(f"weather multiplier '{name}' must be >= 1.0")

        if self.stale_reliability_below > self.trusted_min_reliability:
            raise ValueError("stale_reliability_below must be <= trusted_min_reliability")


def default_eta_policy() -> EtaPolicy:
    """
    Convenience factory for the default policy.
    """
    p = EtaPolicy()
    p.validate()
    return p
