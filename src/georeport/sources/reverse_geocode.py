from typing import Any, Dict

from ..models import AdapterResult
from ..services.http import FetchGateway
from ..settings import get_settings
from .base import absorb_errors, json_object, to_number

SOURCE = "nominatim"


@absorb_errors(SOURCE)
async def reverse_geocode(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    zoom: int | None = 18,
) -> AdapterResult:
    """Nearest address with administrative details for a point (Nominatim reverse)."""
    settings = get_settings()
    res = await gateway.get(
        f"{settings.nominatim_base_url}/reverse",
        params={
            "format": "jsonv2",
            "lat": str(lat),
            "lon": str(lon),
            "zoom": str(int(zoom or 18)),
            "addressdetails": "1",
            "namedetails": "1",
            "extratags": "1",
        },
        timeout_ms=12000,
    )
    if res.status_code >= 400:
        return AdapterResult.failure(SOURCE, f"Nominatim reverse failed: HTTP {res.status_code}")

    body = json_object(res)
    if body.get("error"):
        # Nominatim answers 200 {"error": "Unable to geocode"} over open sea.
        return AdapterResult.failure(SOURCE, str(body["error"]))

    return AdapterResult.success(
        SOURCE,
        display_name=body.get("display_name"),
        address=body.get("address"),
        namedetails=body.get("namedetails"),
        extratags=body.get("extratags"),
        category=body.get("category"),
        type=body.get("type"),
        place_id=body.get("place_id"),
        osm_type=body.get("osm_type"),
        osm_id=body.get("osm_id"),
        lat=to_number(body.get("lat")),
        lon=to_number(body.get("lon")),
    )


def pick_place_name(reverse: Dict[str, Any] | None) -> str | None:
    """Most specific settlement name of a reverse-geocode payload."""
    if not reverse:
        return None
    address = reverse.get("address") or {}
    for key in ("city", "town", "village", "municipality", "county", "state", "region"):
        if address.get(key):
            return address[key]
    display = reverse.get("display_name")
    if isinstance(display, str) and display.strip():
        return display.split(",")[0].strip() or None
    return None
