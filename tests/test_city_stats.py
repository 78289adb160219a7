from typing import Any, Dict

import httpx
import pytest

from georeport.services.http import FetchGateway
from georeport.sources.city_stats import (
    city_stats,
    entity_summary,
    latest_quantity,
    normalize_area_km2,
    population_density,
)


def quantity(amount: str, unit: str = "1", time: str | None = None, rank: str = "normal") -> Dict[str, Any]:
    statement: Dict[str, Any] = {
        "rank": rank,
        "mainsnak": {
            "datavalue": {"value": {"amount": amount, "unit": f"http://www.wikidata.org/entity/Q{unit}" if unit != "1" else "1"}}
        },
    }
    if time:
        statement["qualifiers"] = {"P585": [{"datavalue": {"value": {"time": time}}}]}
    return statement


def valencia_entity(**overrides: Any) -> Dict[str, Any]:
    entity = {
        "id": "Q8818",
        "labels": {"es": {"value": "Valencia"}, "en": {"value": "Valencia"}},
        "claims": {
            "P1082": [
                quantity("+791413", time="+2019-01-01T00:00:00Z"),
                quantity("+807693", time="+2022-01-01T00:00:00Z"),
            ],
            "P2046": [quantity("+134.65", unit="712226")],
        },
    }
    entity.update(overrides)
    return entity


def test_latest_dated_claim_wins() -> None:
    claims = {
        "P1082": [
            quantity("+100", time="+2020-01-01T00:00:00Z"),
            quantity("+300", time="+2022-01-01T00:00:00Z"),
            quantity("+200", time="+2021-01-01T00:00:00Z"),
        ]
    }
    assert latest_quantity(claims, "P1082")["amount"] == 300


def test_equal_dates_keep_the_later_claim() -> None:
    claims = {
        "P1082": [
            quantity("+100", time="+2022-01-01T00:00:00Z"),
            quantity("+150", time="+2022-01-01T00:00:00Z"),
        ]
    }
    assert latest_quantity(claims, "P1082")["amount"] == 150


def test_undated_claim_only_as_first_choice() -> None:
    claims = {"P1082": [quantity("+50"), quantity("+75", time="+2010-01-01T00:00:00Z"), quantity("+90")]}
    picked = latest_quantity(claims, "P1082")
    assert picked["amount"] == 75
    assert picked["date"] == "2010-01-01"


def test_deprecated_claims_are_skipped() -> None:
    claims = {"P1082": [quantity("+999", time="+2023-01-01T00:00:00Z", rank="deprecated"), quantity("+10")]}
    assert latest_quantity(claims, "P1082")["amount"] == 10


def test_area_units() -> None:
    assert normalize_area_km2(134.65, "Q712226") == (134.65, False)
    assert normalize_area_km2(250.0, "Q35852") == (pytest.approx(2.5), False)
    area, estimated = normalize_area_km2(5_000_000.0, "Q25343")
    assert area == pytest.approx(5.0)
    assert estimated is False
    assert normalize_area_km2(80.0, "1") == (80.0, True)


def test_population_density_requires_both_values() -> None:
    assert population_density(807693, 134.65) == round(807693 / 134.65, 2)
    assert population_density(None, 134.65) is None
    assert population_density(807693, None) is None
    assert population_density(807693, 0) is None


def test_entity_summary() -> None:
    city = entity_summary(valencia_entity())
    assert city["population"] == 807693
    assert city["population_date"] == "2022-01-01"
    assert city["area_km2"] == 134.65
    assert city["area_estimated"] is False
    assert city["population_density_km2"] == round(807693 / 134.65, 2)
    assert city["source_url"] == "https://www.wikidata.org/wiki/Q8818"


def test_entity_summary_without_area() -> None:
    entity = valencia_entity(claims={"P1082": [quantity("+1000")]})
    city = entity_summary(entity)
    assert city["area_km2"] is None
    assert city["population_density_km2"] is None


def make_gateway(routes: Dict[str, Any], calls: list) -> FetchGateway:
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        for fragment, response in routes.items():
            if fragment in str(request.url):
                return response
        return httpx.Response(404)

    return FetchGateway(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_explicit_entity_id_skips_searches() -> None:
    calls: list = []
    gateway = make_gateway(
        {"EntityData/Q8818.json": httpx.Response(200, json={"entities": {"Q8818": valencia_entity()}})},
        calls,
    )

    result = await city_stats(gateway, 39.47, -0.37, name_hint="Valencia", country_code="es", wikidata_id="Q8818")

    assert result.ok
    assert result.get("city")["resolution"] == "entity_id"
    assert result.notices == []
    assert all("sparql" not in str(url) for url in calls)
    await gateway.aclose()


@pytest.mark.asyncio
async def test_falls_back_to_proximity_search() -> None:
    calls: list = []
    bindings = {
        "results": {
            "bindings": [
                {"city": {"value": "http://www.wikidata.org/entity/Q8818"}, "distance": {"value": "1.2"}}
            ]
        }
    }
    gateway = make_gateway(
        {
            "query.wikidata.org/sparql": httpx.Response(200, json=bindings),
            "EntityData/Q8818.json": httpx.Response(200, json={"entities": {"Q8818": valencia_entity()}}),
        },
        calls,
    )

    result = await city_stats(gateway, 39.47, -0.37)

    assert result.ok
    assert result.get("city")["resolution"] == "proximity"
    assert result.get("city")["distance_km"] == 1.2
    await gateway.aclose()


@pytest.mark.asyncio
async def test_missing_area_adds_notice() -> None:
    calls: list = []
    entity = valencia_entity(claims={"P1082": [quantity("+1000")]})
    gateway = make_gateway(
        {"EntityData/Q8818.json": httpx.Response(200, json={"entities": {"Q8818": entity}})},
        calls,
    )

    result = await city_stats(gateway, 39.47, -0.37, wikidata_id="Q8818")

    assert result.ok
    assert result.notices == ["area not available."]
    await gateway.aclose()


@pytest.mark.asyncio
async def test_nothing_found_is_a_failure() -> None:
    calls: list = []
    gateway = make_gateway(
        {"query.wikidata.org/sparql": httpx.Response(200, json={"results": {"bindings": []}})},
        calls,
    )

    result = await city_stats(gateway, 0.0, 0.0)

    assert not result.ok
    assert result.error
    await gateway.aclose()


@pytest.mark.asyncio
async def test_name_search_keeps_candidates_in_the_country() -> None:
    calls: list = []
    search = {"search": [{"id": "Q1234", "label": "Valencia"}, {"id": "Q8818", "label": "Valencia"}]}
    in_spain = {"results": {"bindings": [{"city": {"value": "http://www.wikidata.org/entity/Q8818"}}]}}
    gateway = make_gateway(
        {
            "www.wikidata.org/w/api.php": httpx.Response(200, json=search),
            "query.wikidata.org/sparql": httpx.Response(200, json=in_spain),
            "EntityData/Q8818.json": httpx.Response(200, json={"entities": {"Q8818": valencia_entity()}}),
        },
        calls,
    )

    result = await city_stats(gateway, 39.47, -0.37, name_hint="València", country_code="es")

    assert result.ok
    assert result.get("city")["resolution"] == "name_search"
    assert result.get("city")["id"] == "Q8818"
    search_url = next(url for url in calls if "w/api.php" in str(url))
    assert search_url.params["action"] == "wbsearchentities"
    assert search_url.params["search"] == "València"
    assert search_url.params["language"] == "es"
    sparql_url = next(url for url in calls if "sparql" in str(url))
    assert 'wdt:P297 "ES"' in sparql_url.params["query"]
    assert all("Q1234.json" not in str(url) for url in calls)
    await gateway.aclose()


@pytest.mark.asyncio
async def test_failed_name_search_falls_through_to_proximity() -> None:
    calls: list = []
    bindings = {
        "results": {
            "bindings": [
                {"city": {"value": "http://www.wikidata.org/entity/Q8818"}, "distance": {"value": "0.8"}}
            ]
        }
    }
    gateway = make_gateway(
        {
            "www.wikidata.org/w/api.php": httpx.Response(503),
            "query.wikidata.org/sparql": httpx.Response(200, json=bindings),
            "EntityData/Q8818.json": httpx.Response(200, json={"entities": {"Q8818": valencia_entity()}}),
        },
        calls,
    )

    result = await city_stats(gateway, 39.47, -0.37, name_hint="València", country_code="es")

    assert result.ok
    assert result.get("city")["resolution"] == "proximity"
    await gateway.aclose()
