"""City population and area from Wikidata.

The city entity is resolved through a priority chain: an explicit entity id
(from reverse-geocode extratags), then a name search (wbsearchentities)
restricted to the country, then a proximity search around the point.
Whatever the route, the entity is read from EntityData so population dates
and area units are normalised the same way.
"""

import logging
import re
from typing import Any, AsyncIterator, Dict, List, Tuple

import httpx

from ..models import AdapterResult
from ..services.http import FetchGateway, FetchTimeoutError
from ..settings import get_settings
from .base import UpstreamError, absorb_errors, json_object, to_number

logger = logging.getLogger(__name__)

SOURCE = "wikidata"
ENTITY_ID = re.compile(r"^Q\d+$")
WIKIDATA_TIME = re.compile(r"^([+-]?\d{1,})-(\d{2})-(\d{2})")

POPULATION = "P1082"
AREA = "P2046"
POINT_IN_TIME = "P585"

UNITLESS = "1"
# Wikidata unit entity -> factor to km².
AREA_UNITS_KM2 = {
    "Q712226": 1.0,  # square kilometre
    "Q25343": 1e-6,  # square metre
    "Q35852": 0.01,  # hectare
    "Q232291": 2.589988110336,  # square mile
    "Q81292": 0.00404685642,  # acre
}


def parse_wikidata_time(value: str | None) -> Tuple[Tuple[int, int, int], str] | None:
    """Sortable key and ISO-ish date for a Wikidata time string (+2021-01-01T00:00:00Z)."""
    if not value:
        return None
    match = WIKIDATA_TIME.match(value)
    if not match:
        return None
    year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3))
    return (year, month, day), f"{year:04d}-{max(month, 1):02d}-{max(day, 1):02d}"


def _statement_time(statement: Dict[str, Any]) -> Tuple[Tuple[int, int, int], str] | None:
    for qualifier in (statement.get("qualifiers") or {}).get(POINT_IN_TIME, []):
        value = (qualifier.get("datavalue") or {}).get("value") or {}
        parsed = parse_wikidata_time(value.get("time"))
        if parsed:
            return parsed
    return None


def latest_quantity(claims: Dict[str, Any], prop: str) -> Dict[str, Any] | None:
    """Most recent quantity claim of a property.

    Dated claims win over undated ones; among dated claims the latest wins and
    ties go to the later claim. An undated claim is only kept when nothing was
    found before it.
    """
    best: Dict[str, Any] | None = None
    best_key: Tuple[int, int, int] | None = None
    for statement in claims.get(prop, []):
        if statement.get("rank") == "deprecated":
            continue
        value = ((statement.get("mainsnak") or {}).get("datavalue") or {}).get("value")
        if not isinstance(value, dict):
            continue
        amount = to_number(value.get("amount"))
        if amount is None:
            continue
        unit = str(value.get("unit") or UNITLESS).rsplit("/", 1)[-1]
        when = _statement_time(statement)
        if when:
            key, date = when
            if best_key is None or key >= best_key:
                best_key = key
                best = {"amount": amount, "unit": unit, "date": date}
        elif best is None:
            best = {"amount": amount, "unit": unit, "date": None}
    return best


def normalize_area_km2(amount: float, unit: str) -> Tuple[float, bool]:
    """Area in km² and whether the unit had to be assumed."""
    factor = AREA_UNITS_KM2.get(unit)
    if factor is None:
        return amount, True
    return amount * factor, False


def population_density(population: float | None, area_km2: float | None) -> float | None:
    if population is None or area_km2 is None or area_km2 <= 0:
        return None
    return round(population / area_km2, 2)


def entity_summary(entity: Dict[str, Any], language: str = "es") -> Dict[str, Any]:
    """Normalised population/area summary of one EntityData entity."""
    qid = entity.get("id")
    labels = entity.get("labels") or {}
    label = None
    for lang in (language, "en"):
        if lang in labels:
            label = labels[lang].get("value")
            break
    if label is None and labels:
        label = next(iter(labels.values())).get("value")

    claims = entity.get("claims") or {}
    population_claim = latest_quantity(claims, POPULATION)
    area_claim = latest_quantity(claims, AREA)

    population = population_claim["amount"] if population_claim else None
    if population is not None and population.is_integer():
        population = int(population)
    area_km2 = None
    area_estimated = False
    if area_claim:
        area_km2, area_estimated = normalize_area_km2(area_claim["amount"], area_claim["unit"])
        area_km2 = round(area_km2, 3)

    return {
        "id": qid,
        "label": label,
        "population": population,
        "population_date": population_claim["date"] if population_claim else None,
        "area_km2": area_km2,
        "area_estimated": area_estimated,
        "population_density_km2": population_density(population, area_km2),
        "source_url": f"https://www.wikidata.org/wiki/{qid}" if qid else None,
    }


async def _fetch_entity(gateway: FetchGateway, qid: str) -> Dict[str, Any]:
    settings = get_settings()
    res = await gateway.get(f"{settings.wikidata_entity_url}/{qid}.json", timeout_ms=15000)
    if res.status_code >= 400:
        raise UpstreamError(f"Wikidata EntityData HTTP {res.status_code}")
    entities = json_object(res).get("entities") or {}
    if qid in entities:
        return entities[qid]
    # Redirected entities come back under their new id.
    if entities:
        return next(iter(entities.values()))
    raise UpstreamError(f"Entity {qid} not found")


async def _sparql(gateway: FetchGateway, query: str) -> List[Dict[str, Any]]:
    settings = get_settings()
    res = await gateway.get(
        settings.wikidata_sparql_url,
        params={"format": "json", "query": query},
        headers={"Accept": "application/sparql-results+json"},
        timeout_ms=15000,
    )
    if res.status_code >= 400:
        raise UpstreamError(f"Wikidata HTTP {res.status_code}")
    return (json_object(res).get("results") or {}).get("bindings") or []


def _entity_id(uri: str | None) -> str | None:
    if not uri:
        return None
    qid = uri.rsplit("/", 1)[-1]
    return qid if ENTITY_ID.match(qid) else None


def _sparql_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


async def search_entities(gateway: FetchGateway, name: str, language: str, limit: int = 5) -> List[str]:
    """Entity ids whose label or alias matches ``name`` (wbsearchentities), best match first."""
    settings = get_settings()
    res = await gateway.get(
        settings.wikidata_api_url,
        params={
            "action": "wbsearchentities",
            "search": name,
            "language": language,
            "uselang": language,
            "type": "item",
            "limit": str(limit),
            "format": "json",
        },
        timeout_ms=15000,
    )
    if res.status_code >= 400:
        raise UpstreamError(f"Wikidata search HTTP {res.status_code}")
    hits = json_object(res).get("search") or []
    return [str(hit["id"]) for hit in hits if isinstance(hit, dict) and ENTITY_ID.match(str(hit.get("id", "")))]


def country_filter_query(qids: List[str], country_code: str) -> str:
    values = " ".join(f"wd:{qid}" for qid in qids)
    return f"""
SELECT ?city WHERE {{
  VALUES ?city {{ {values} }}
  ?city wdt:P17 ?country .
  ?country wdt:P297 "{_sparql_literal(country_code.upper())}" .
}}
""".strip()


async def _name_candidates(
    gateway: FetchGateway,
    name: str,
    country_code: str | None,
    language: str,
) -> List[str]:
    qids = await search_entities(gateway, name, language)
    if not qids or not country_code:
        return qids
    rows = await _sparql(gateway, country_filter_query(qids, country_code))
    in_country = {_entity_id((row.get("city") or {}).get("value")) for row in rows}
    return [qid for qid in qids if qid in in_country]


def proximity_query(lat: float, lon: float, radius_km: int = 50) -> str:
    return f"""
SELECT ?city ?distance WHERE {{
  SERVICE wikibase:around {{
    ?city wdt:P625 ?location .
    bd:serviceParam wikibase:center "Point({lon} {lat})"^^geo:wktLiteral .
    bd:serviceParam wikibase:radius "{radius_km}" .
    bd:serviceParam wikibase:distance ?distance .
  }}
  ?city wdt:P31/wdt:P279* wd:Q515 .
}}
ORDER BY ?distance
LIMIT 10
""".strip()


async def _candidates(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    name_hint: str | None,
    country_code: str | None,
    wikidata_id: str | None,
    language: str,
    errors: List[str],
) -> AsyncIterator[Tuple[str, str, float | None]]:
    """Candidate entity ids in priority order; later routes run only if needed."""
    if wikidata_id and ENTITY_ID.match(wikidata_id):
        yield wikidata_id, "entity_id", None

    if name_hint:
        try:
            qids = await _name_candidates(gateway, name_hint, country_code, language)
        except (FetchTimeoutError, httpx.HTTPError, UpstreamError, ValueError) as e:
            logger.info("Wikidata name search for %r failed: %s", name_hint, e)
            errors.append(str(e))
            qids = []
        for qid in qids:
            yield qid, "name_search", None

    try:
        rows = await _sparql(gateway, proximity_query(lat, lon))
    except (FetchTimeoutError, httpx.HTTPError, UpstreamError, ValueError) as e:
        logger.info("Wikidata proximity search failed: %s", e)
        errors.append(str(e))
        rows = []
    for row in rows:
        qid = _entity_id((row.get("city") or {}).get("value"))
        if qid:
            yield qid, "proximity", to_number((row.get("distance") or {}).get("value"))
            return


@absorb_errors(SOURCE)
async def city_stats(
    gateway: FetchGateway,
    lat: float,
    lon: float,
    name_hint: str | None = None,
    country_code: str | None = None,
    wikidata_id: str | None = None,
    language: str = "es",
) -> AdapterResult:
    """Population, area and density of the city at or near a point."""
    errors: List[str] = []
    seen = set()
    partial: Dict[str, Any] | None = None

    async for qid, resolution, distance in _candidates(
        gateway, lat, lon, name_hint, country_code, wikidata_id, language, errors
    ):
        if qid in seen:
            continue
        seen.add(qid)
        try:
            entity = await _fetch_entity(gateway, qid)
        except (FetchTimeoutError, httpx.HTTPError, UpstreamError, ValueError) as e:
            errors.append(str(e))
            continue
        city = entity_summary(entity, language)
        city["resolution"] = resolution
        city["distance_km"] = distance
        if city["population"] is not None:
            return _with_notices(AdapterResult.success(SOURCE, city=city))
        if partial is None:
            partial = city

    if partial is not None:
        return _with_notices(AdapterResult.success(SOURCE, city=partial))
    return AdapterResult.failure(SOURCE, errors[-1] if errors else "No nearby city")


def _with_notices(result: AdapterResult) -> AdapterResult:
    city = result.get("city") or {}
    if city.get("population") is None:
        result.notices.append("population not available.")
    if city.get("area_km2") is None:
        result.notices.append("area not available.")
    elif city.get("area_estimated"):
        result.notices.append("area estimated (unit not explicit).")
    return result
