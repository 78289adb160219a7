import asyncio
import logging
from typing import Any, Dict, List

import httpx

from ..models import AdapterResult
from ..services.http import FetchGateway, FetchTimeoutError
from ..settings import get_settings
from .base import absorb_errors, json_object
from .geo import bbox_around, bbox_lonlat, haversine_m

logger = logging.getLogger(__name__)

SOURCE = "overpass"
RATE_LIMIT_PAUSE_S = 1.2
NEAREST_LIMIT = 25

OVERPASS_QUERY = """
[out:json][timeout:25];
(
  node(around:{r},{lat},{lon})["amenity"~"hospital|clinic|doctors|pharmacy|school|university|police|fire_station|fuel|marketplace"];
  node(around:{r},{lat},{lon})["public_transport"];
  node(around:{r},{lat},{lon})["railway"="station"];
  way(around:{r},{lat},{lon})["highway"];
  way(around:{r},{lat},{lon})["landuse"];
);
out center 200;
""".strip()


def _element_point(el: Dict[str, Any]) -> tuple[float, float] | None:
    if el.get("type") == "node" and isinstance(el.get("lat"), (int, float)) and isinstance(el.get("lon"), (int, float)):
        return el["lat"], el["lon"]
    center = el.get("center")
    if center and "lat" in center and "lon" in center:
        return center["lat"], center["lon"]
    return None


def summarize_elements(lat: float, lon: float, elements: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Nearest features by distance plus simple per-category counts."""
    scored = []
    for el in elements:
        point = _element_point(el)
        if point is None:
            continue
        scored.append((haversine_m((lat, lon), point), el, point))
    scored.sort(key=lambda x: x[0])

    nearest = [
        {
            "distance_m": round(d),
            "type": el.get("type"),
            "tags": el.get("tags") or {},
            "lat": p[0],
            "lon": p[1],
        }
        for d, el, p in scored[:NEAREST_LIMIT]
    ]

    counts = {"hospitals": 0, "pharmacies": 0, "schools": 0, "transport": 0, "landuse": 0}
    for el in elements:
        tags = el.get("tags") or {}
        amenity = tags.get("amenity")
        if amenity in ("hospital", "clinic"):
            counts["hospitals"] += 1
        if amenity == "pharmacy":
            counts["pharmacies"] += 1
        if amenity in ("school", "university"):
            counts["schools"] += 1
        if tags.get("public_transport") or tags.get("railway") == "station":
            counts["transport"] += 1
        if tags.get("landuse"):
            counts["landuse"] += 1

    return {"counts": counts, "nearest": nearest}


async def _query_overpass(gateway: FetchGateway, query: str) -> tuple[Dict[str, Any] | None, str, int | None]:
    """Try each Overpass endpoint in turn; pause before moving on after HTTP 429."""
    endpoints = get_settings().overpass_endpoints()
    last_status: int | None = None
    used = endpoints[0]
    for endpoint in endpoints:
        used = endpoint
        try:
            res = await gateway.post(
                endpoint,
                data={"data": query},
                timeout_ms=20000,
            )
        except (FetchTimeoutError, httpx.RequestError) as e:
            logger.warning("Overpass endpoint %s unreachable: %s", endpoint, e)
            last_status = None
            continue
        if res.status_code < 400:
            return json_object(res), used, None
        last_status = res.status_code
        logger.info("Overpass endpoint %s answered HTTP %s", endpoint, res.status_code)
        if res.status_code == 429:
            await asyncio.sleep(RATE_LIMIT_PAUSE_S)
    return None, used, last_status


async def _admin_from_nominatim(gateway: FetchGateway, lat: float, lon: float) -> Dict[str, Any]:
    settings = get_settings()
    try:
        res = await gateway.get(
            f"{settings.nominatim_base_url}/reverse",
            params={"format": "jsonv2", "lat": str(lat), "lon": str(lon), "zoom": "10", "addressdetails": "1"},
            timeout_ms=12000,
        )
    except (FetchTimeoutError, httpx.RequestError) as e:
        return {"ok": False, "source": "nominatim", "error": str(e)}
    if res.status_code >= 400:
        return {"ok": False, "source": "nominatim", "http": res.status_code}
    try:
        data = res.json()
    except ValueError as e:
        return {"ok": False, "source": "nominatim", "error": f"Invalid JSON: {e}"}
    return {"ok": True, "source": "nominatim", "data": data}


async def administrative_unit(gateway: FetchGateway, lat: float, lon: float) -> Dict[str, Any]:
    """IGN administrative unit around the point, Nominatim reverse when IGN fails."""
    settings = get_settings()
    bb = bbox_around(lat, lon, 0.05)
    ign_error: str
    try:
        res = await gateway.get(
            f"{settings.ign_features_base_url}/collections/au-administrativeunit/items",
            params={"bbox": bbox_lonlat(bb), "limit": "1"},
            headers={"Accept": "application/geo+json,application/json"},
            timeout_ms=9000,
        )
        if res.status_code < 400:
            return {"ok": True, "source": "ign", "data": res.json()}
        ign_error = f"HTTP {res.status_code}"
    except (FetchTimeoutError, httpx.RequestError, ValueError) as e:
        ign_error = str(e) or e.__class__.__name__

    logger.info("IGN administrative unit unavailable (%s); falling back to Nominatim", ign_error)
    fallback = await _admin_from_nominatim(gateway, lat, lon)
    if fallback["ok"]:
        return fallback
    return {"ok": False, "source": "ign", "error": ign_error}


@absorb_errors(SOURCE)
async def urban_layers(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    radius_m: float | None = 1200,
) -> AdapterResult:
    """Infrastructure and land use around a point (Overpass) plus its administrative unit."""
    radius = int(radius_m or 1200)
    query = OVERPASS_QUERY.format(r=radius, lat=lat, lon=lon)

    body, used_endpoint, last_status = await _query_overpass(gateway, query)
    if body is None:
        return AdapterResult.failure(
            SOURCE,
            f"Overpass failed: HTTP {last_status if last_status is not None else 'unknown'}",
            radius_m=radius,
        )

    elements = body.get("elements") or []
    summary = summarize_elements(lat, lon, elements)
    admin = await administrative_unit(gateway, lat, lon)

    result = AdapterResult.success(
        SOURCE,
        radius_m=radius,
        counts=summary["counts"],
        nearest=summary["nearest"],
        ign_admin=admin,
        admin_source=admin.get("source", "ign"),
        overpass_used=used_endpoint,
        overpass_fallback_used=used_endpoint != get_settings().overpass_interpreter_url,
        raw_count=len(elements),
    )
    if not admin["ok"]:
        result.notices.append("IGN administrative unit unavailable (best-effort).")
    return result
