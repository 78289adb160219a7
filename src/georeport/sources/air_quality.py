from ..models import AdapterResult
from ..services.http import FetchGateway
from ..settings import get_settings
from .base import absorb_errors, json_object

SOURCE = "open-meteo"
CURRENT_VARIABLES = (
    "pm2_5",
    "pm10",
    "us_aqi",
    "european_aqi",
    "nitrogen_dioxide",
    "ozone",
    "sulphur_dioxide",
    "carbon_monoxide",
)


@absorb_errors(SOURCE)
async def air_quality(gateway: FetchGateway, lat: float, lon: float) -> AdapterResult:
    """Current air quality indicators for a point (Open-Meteo)."""
    res = await gateway.get(
        get_settings().open_meteo_air_quality_url,
        params={
            "latitude": str(lat),
            "longitude": str(lon),
            "current": ",".join(CURRENT_VARIABLES),
        },
        timeout_ms=15000,
    )
    if res.status_code >= 400:
        return AdapterResult.failure(SOURCE, f"Open-Meteo HTTP {res.status_code}")

    body = json_object(res)
    current = body.get("current")
    if not current:
        return AdapterResult.failure(SOURCE, "No current air quality data")

    return AdapterResult.success(
        SOURCE,
        current=current,
        current_units=body.get("current_units"),
        timezone=body.get("timezone"),
    )
