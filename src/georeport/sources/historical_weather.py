import math
from datetime import date
from typing import Any, Dict, Iterable, List

from ..models import AdapterResult
from ..services.http import FetchGateway
from ..settings import get_settings
from .base import absorb_errors, json_object

SOURCE = "open-meteo-archive"
DAILY_VARIABLES = (
    "temperature_2m_max",
    "temperature_2m_min",
    "temperature_2m_mean",
    "precipitation_sum",
    "rain_sum",
    "snowfall_sum",
    "precipitation_hours",
    "wind_speed_10m_max",
)


def date_range(years: int, today: date | None = None) -> Dict[str, str]:
    end = today or date.today()
    try:
        start = end.replace(year=end.year - years)
    except ValueError:
        # 29 February
        start = end.replace(year=end.year - years, day=28)
    return {"start": start.isoformat(), "end": end.isoformat()}


def _numbers(values: Iterable[Any] | None) -> List[float]:
    return [
        float(v)
        for v in (values or [])
        if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
    ]


def _round(value: float | None, digits: int = 1) -> float | None:
    return None if value is None else round(value, digits)


def _avg(values: List[float]) -> float | None:
    return sum(values) / len(values) if values else None


def summarize_daily(daily: Dict[str, Any]) -> Dict[str, Any]:
    """Aggregate daily Open-Meteo series into the figures the report needs."""
    t_max = _numbers(daily.get("temperature_2m_max"))
    t_min = _numbers(daily.get("temperature_2m_min"))
    t_mean = _numbers(daily.get("temperature_2m_mean"))
    precipitation = _numbers(daily.get("precipitation_sum"))
    rain = _numbers(daily.get("rain_sum"))
    snowfall = _numbers(daily.get("snowfall_sum"))
    precip_hours = _numbers(daily.get("precipitation_hours"))
    wind_max = _numbers(daily.get("wind_speed_10m_max"))

    return {
        "days": len(t_mean) or len(precipitation) or len(wind_max),
        "temperature": {
            "mean_c": _round(_avg(t_mean)),
            "max_c": _round(max(t_max) if t_max else None),
            "min_c": _round(min(t_min) if t_min else None),
            "days_over_30": sum(1 for v in t_max if v >= 30),
            "days_over_35": sum(1 for v in t_max if v >= 35),
            "days_below_0": sum(1 for v in t_min if v <= 0),
        },
        "precipitation": {
            "total_mm": _round(sum(precipitation)),
            "avg_mm": _round(_avg(precipitation)),
            "max_day_mm": _round(max(precipitation) if precipitation else None),
            "days_over_10mm": sum(1 for v in precipitation if v >= 10),
            "days_over_20mm": sum(1 for v in precipitation if v >= 20),
            "wet_hours_total": _round(sum(precip_hours), 0),
        },
        "rain": {
            "total_mm": _round(sum(rain)),
            "snowfall_total_cm": _round(sum(snowfall)),
        },
        "wind": {
            "max_kmh": _round(max(wind_max) if wind_max else None),
            "days_over_50kmh": sum(1 for v in wind_max if v >= 50),
            "days_over_70kmh": sum(1 for v in wind_max if v >= 70),
        },
    }


@absorb_errors(SOURCE)
async def historical_weather(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    years: int = 5,
) -> AdapterResult:
    """Daily weather of the last ``years`` years summarised (Open-Meteo archive)."""
    period = date_range(int(years))
    res = await gateway.get(
        get_settings().open_meteo_archive_url,
        params={
            "latitude": str(lat),
            "longitude": str(lon),
            "start_date": period["start"],
            "end_date": period["end"],
            "daily": ",".join(DAILY_VARIABLES),
            "timezone": "UTC",
            "temperature_unit": "celsius",
            "wind_speed_unit": "kmh",
            "precipitation_unit": "mm",
        },
        timeout_ms=20000,
    )
    if res.status_code >= 400:
        return AdapterResult.failure(SOURCE, f"Open-Meteo HTTP {res.status_code}")

    body = json_object(res)
    daily = body.get("daily")
    if not daily:
        return AdapterResult.failure(SOURCE, "No daily data from Open-Meteo")

    return AdapterResult.success(
        SOURCE,
        period={**period, "years": int(years)},
        daily_units=body.get("daily_units"),
        summary=summarize_daily(daily),
    )
