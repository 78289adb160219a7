import math
from typing import Dict, Tuple

EARTH_RADIUS_M = 6371000


def haversine_m(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance in metres between two (lat, lon) points."""
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1
    s = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(s))


def bbox_around(lat: float, lon: float, delta_deg: float) -> Dict[str, float]:
    return {
        "min_lat": lat - delta_deg,
        "min_lon": lon - delta_deg,
        "max_lat": lat + delta_deg,
        "max_lon": lon + delta_deg,
    }


def bbox_lonlat(bb: Dict[str, float]) -> str:
    """OGC API / EONET order: minLon,minLat,maxLon,maxLat."""
    return f"{bb['min_lon']},{bb['min_lat']},{bb['max_lon']},{bb['max_lat']}"
