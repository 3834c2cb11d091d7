#Marks routing as a package.
#Re-exports the ETA API so other modules import from routing without knowing internal file names.
#No business logic.

from .eta_policy import EtaPolicy, default_eta_policy
from .eta_service import (
    EtaBand,
    backup_eta_band,
    compute_eta_band,
    estimate_travel_minutes,
    eta_timestamps_from_now,
)
from .geo import haversine_km

__all__ = [
    "EtaPolicy",
    "default_eta_policy",
    "EtaBand",
    "backup_eta_band",
    "compute_eta_band",
    "estimate_travel_minutes",
    "eta_timestamps_from_now",
    "haversine_km",
]
