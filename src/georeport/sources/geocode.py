import logging

from ..models import AdapterResult
from ..services.http import FetchGateway
from ..settings import get_settings
from .base import UpstreamError, absorb_errors, to_number

logger = logging.getLogger(__name__)

SOURCE = "nominatim"


@absorb_errors(SOURCE)
async def geocode_address(
    gateway: FetchGateway,
    address: str,
    country_code: str | None = "es",
    limit: int | None = 1,
) -> AdapterResult:
    """Resolve a free-text address to coordinates (Nominatim search, best candidate).

    Returns:
        AdapterResult: success with ``found``, ``lat``, ``lon``, ``display_name``,
            ``address`` and ``candidates``; failure with ``found=False`` when
            Nominatim has no match.
    """
    settings = get_settings()
    params = {
        "q": address,
        "format": "jsonv2",
        "addressdetails": "1",
        "limit": str(limit or 1),
    }
    if country_code:
        params["countrycodes"] = country_code

    res = await gateway.get(
        f"{settings.nominatim_base_url}/search",
        params=params,
        timeout_ms=12000,
    )
    if res.status_code >= 400:
        return AdapterResult.failure(SOURCE, f"Nominatim search failed: HTTP {res.status_code}")

    rows = res.json()
    if not isinstance(rows, list):
        raise UpstreamError(f"Unexpected Nominatim search body ({type(rows).__name__})")
    if not rows:
        logger.info("Nominatim returned no results for %r", address)
        return AdapterResult.failure(SOURCE, "No results", found=False, candidates=[])

    best = rows[0]
    lat = to_number(best.get("lat"))
    lon = to_number(best.get("lon"))
    if lat is None or lon is None:
        return AdapterResult.failure(SOURCE, "Response without valid lat/lon", found=True)

    return AdapterResult.success(
        SOURCE,
        found=True,
        lat=lat,
        lon=lon,
        display_name=best.get("display_name"),
        address=best.get("address"),
        candidates=[
            {"display_name": r.get("display_name"), "lat": to_number(r.get("lat")), "lon": to_number(r.get("lon"))}
            for r in rows
        ],
    )
