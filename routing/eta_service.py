"""
Purpose: ETA estimation policy.
What it does:

Converts geography + conditions into minutes used by:
- customer-facing "arrives in X"
- the trusted-arrival band (low / high window) shown while tracking
- backup-restaurant labels offered during a delay

Everything here is pure: no I/O, no failure modes.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .eta_policy import EtaPolicy, default_eta_policy
from .geo import coordinates_of, haversine_km

_LEADING_NUMBER = re.compile(r"^\s*[+-]?\d+")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_base_minutes(delivery_time: Any) -> Optional[float]:
    """
    Read a restaurant's declared delivery time.

    Strings like "30-40 min" use their leading integer. Returns None when
    nothing parses.
    """
    if delivery_time is None or isinstance(delivery_time, bool):
        return None
    if isinstance(delivery_time, str):
        match = _LEADING_NUMBER.match(delivery_time)
        return float(int(match.group(0))) if match else None
    try:
        value = float(delivery_time)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(value) else value


def estimate_travel_minutes(
    restaurant: Any,
    destination: Any = None,
    *,
    traffic: Optional[str] = None,
    weather: Optional[str] = None,
    policy: Optional[EtaPolicy] = None,
) -> int:
    """
    Expected minutes from restaurant to destination.

    Args:
        restaurant: row dict or object with latitude, longitude, delivery_time
        destination: row dict or object with latitude, longitude (optional)
        traffic: "light" | "moderate" | "heavy" (anything else counts as light)
        weather: "normal" | "rain" | "storm" (anything else counts as normal)

    Returns:
        Whole minutes, never below policy.min_travel_minutes.
    """
    policy = policy or default_eta_policy()

    if isinstance(restaurant, dict):
        base = parse_base_minutes(restaurant.get("delivery_time"))
    else:
        base = parse_base_minutes(getattr(restaurant, "delivery_time", None))

    origin = coordinates_of(restaurant)
    target = coordinates_of(destination)
    distance_km = policy.default_distance_km
    if origin and target:
        distance_km = haversine_km(origin[0], origin[1], target[0], target[1])

    traffic_factor = policy.traffic_multipliers.get(traffic or "light", 1.0)
    weather_factor = policy.weather_multipliers.get(weather or "normal", 1.0)

    speed_kmh = policy.courier_speed_kmh / traffic_factor
    from_distance = max(
        policy.min_travel_minutes,
        _round_half_up(distance_km / speed_kmh * 60 * weather_factor),
    )

    if base is not None and base > 0:
        return _round_half_up(max(from_distance, base * policy.base_estimate_share))

    return from_distance


@dataclass(frozen=True)
class EtaBand:
    """
    Trusted-arrival window in minutes from now.
    """
    eta_minutes: int
    eta_low_minutes: int
    eta_high_minutes: int
    trusted: bool
    weather_factor: float
    band_width_minutes: int
    band_too_wide: bool
    data_stale: bool

    @property
    def label(self) -> str:
        return f"{self.eta_low_minutes}-{self.eta_high_minutes} min"


def compute_eta_band(
    prep_p50_minutes: float,
    prep_p90_minutes: float,
    travel_minutes: float,
    *,
    buffer_minutes: Optional[float] = None,
    weather: str = "normal",
    reliability_score: float = 0.9,
    data_fresh: bool = True,
    policy: Optional[EtaPolicy] = None,
) -> EtaBand:
    """
    Build the low/high arrival window from prep percentiles and travel time.

    The band is "trusted" only when the restaurant is reliable, weather is
    mild, the window is narrow and the inputs are fresh.
    """
    policy = policy or default_eta_policy()
    if buffer_minutes is None:
        buffer_minutes = policy.band_default_buffer_minutes

    weather_factor = policy.band_weather_factors.get(weather, 1.0)
    safe_travel = max(policy.band_min_travel_minutes, travel_minutes)
    p50 = prep_p50_minutes + buffer_minutes
    p90 = prep_p90_minutes + buffer_minutes + policy.band_p90_cushion_minutes

    low = _round_half_up(p50 + safe_travel * weather_factor)
    high = _round_half_up(p90 + safe_travel * weather_factor + policy.band_high_cushion_minutes)
    mid = _round_half_up((low + high) / 2)

    width = high - low
    too_wide = width > policy.band_max_width_minutes
    stale = reliability_score < policy.stale_reliability_below or not data_fresh
    trusted = (
        reliability_score >= policy.trusted_min_reliability
        and weather_factor <= policy.trusted_max_weather_factor
        and not too_wide
        and not stale
    )

    return EtaBand(
        eta_minutes=mid,
        eta_low_minutes=low,
        eta_high_minutes=high,
        trusted=trusted,
        weather_factor=weather_factor,
        band_width_minutes=width,
        band_too_wide=too_wide,
        data_stale=stale,
    )


def backup_eta_band(delivery_time: Any, rating: Optional[float] = None) -> EtaBand:
    """
    Rough band for a backup restaurant we have no SLA history for.
    """
    base = parse_base_minutes(delivery_time)
    if base:
        p50 = max(10, _round_half_up(base * 0.4))
        p90 = max(16, _round_half_up(base * 0.65))
        travel = max(8, base / 2)
    else:
        p50, p90, travel = 12, 20, 15
    reliability = min(float(rating) / 5, 1) if rating else 0.9
    return compute_eta_band(p50, p90, travel, buffer_minutes=4, reliability_score=reliability)


def eta_timestamps_from_now(band: EtaBand, now: Optional[datetime] = None) -> Dict[str, str]:
    """
    Absolute ISO timestamps for the promised time and the window bounds.
    """
    now = now or datetime.now(timezone.utc)
    return {
        "eta_promised": (now + timedelta(minutes=band.eta_minutes)).isoformat(),
        "eta_confidence_low": (now + timedelta(minutes=band.eta_low_minutes)).isoformat(),
        "eta_confidence_high": (now + timedelta(minutes=band.eta_high_minutes)).isoformat(),
    }
