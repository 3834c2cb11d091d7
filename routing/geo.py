#Purpose: Great-circle distance helpers.
#Straight-line (haversine) distance between two (lat, lon) points.
#Used by the ETA estimator when no road network is involved.

import math
from typing import Optional, Tuple

#internal coordinate type :(lat,lon)
LatLon = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in kilometres.
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def coordinates_of(obj) -> Optional[LatLon]:
    """
    Pull (latitude, longitude) out of a row dict or an object.

    Zero or missing values count as "no coordinates", matching how the
    backend stores unknown locations.
    """
    if obj is None:
        return None
    if isinstance(obj, dict):
        lat, lon = obj.get("latitude"), obj.get("longitude")
    else:
        lat, lon = getattr(obj, "latitude", None), getattr(obj, "longitude", None)
    if not lat or not lon:
        return None
    return float(lat), float(lon)
