import logging
from typing import Any, Dict, List

from ..models import AdapterResult
from ..services.http import FetchGateway
from ..settings import get_settings
from .base import absorb_errors, json_object
from .geo import bbox_around, bbox_lonlat, haversine_m
from .historical_weather import date_range

logger = logging.getLogger(__name__)

SOURCE = "nasa-eonet"
PAGE_SIZE = 200
MAX_PAGES = 3
MAX_EVENTS = 20


def _dates(geometry: List[Dict[str, Any]]) -> tuple[str | None, str | None]:
    dates = sorted(g["date"] for g in geometry if isinstance(g.get("date"), str))
    if not dates:
        return None, None
    return dates[0], dates[-1]


def _distance_km(lat: float, lon: float, geometry: List[Dict[str, Any]]) -> float | None:
    best = None
    for g in geometry:
        coords = g.get("coordinates")
        # Points only; polygons carry nested lists.
        if not isinstance(coords, list) or len(coords) < 2:
            continue
        ev_lon, ev_lat = coords[0], coords[1]
        if not isinstance(ev_lat, (int, float)) or not isinstance(ev_lon, (int, float)):
            continue
        d = haversine_m((lat, lon), (ev_lat, ev_lon))
        if best is None or d < best:
            best = d
    return None if best is None else round(best / 1000, 1)


def summarize_events(lat: float, lon: float, events: List[Dict[str, Any]]) -> Dict[str, Any]:
    categories: Dict[str, Dict[str, Any]] = {}
    summaries = []
    for ev in events:
        cats = ev.get("categories") or []
        for cat in cats:
            cat_id = str(cat.get("id", "unknown"))
            entry = categories.setdefault(cat_id, {"title": str(cat.get("title", cat_id)), "count": 0})
            entry["count"] += 1

        geometry = ev.get("geometry") or []
        start, end = _dates(geometry)
        summaries.append(
            {
                "id": str(ev.get("id", "")),
                "title": str(ev.get("title") or "Untitled event"),
                "categories": [str(c["id"]) for c in cats if c.get("id")],
                "category_titles": [str(c["title"]) for c in cats if c.get("title")],
                "date_start": start,
                "date_end": end,
                "distance_km": _distance_km(lat, lon, geometry),
                "sources": [str(s["url"]) for s in ev.get("sources") or [] if s.get("url")],
            }
        )

    summaries.sort(key=lambda s: s["date_end"] or s["date_start"] or "", reverse=True)
    return {"total_events": len(summaries), "categories": categories, "events": summaries[:MAX_EVENTS]}


@absorb_errors(SOURCE)
async def historical_events(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    years: int = 5,
    delta_deg: float = 1.0,
) -> AdapterResult:
    """Natural events (fires, floods, storms...) recorded around a point by NASA EONET."""
    period = date_range(int(years))
    bb = bbox_around(lat, lon, float(delta_deg))
    url = get_settings().eonet_events_url

    events: List[Dict[str, Any]] = []
    for page in range(1, MAX_PAGES + 1):
        res = await gateway.get(
            url,
            params={
                "start": period["start"],
                "end": period["end"],
                "bbox": bbox_lonlat(bb),
                "status": "all",
                "limit": str(PAGE_SIZE),
                "page": str(page),
            },
            timeout_ms=20000,
        )
        if res.status_code >= 400:
            return AdapterResult.failure(SOURCE, f"EONET HTTP {res.status_code}")
        batch = json_object(res).get("events") or []
        events.extend(batch)
        if len(batch) < PAGE_SIZE:
            break

    logger.debug("EONET returned %d events around %s,%s", len(events), lat, lon)
    result = AdapterResult.success(
        SOURCE,
        period={**period, "years": int(years)},
        bbox=bb,
        **summarize_events(lat, lon, events),
    )
    if not events:
        result.notices.append("no events recorded in the area.")
    return result
