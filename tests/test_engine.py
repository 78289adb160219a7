import json
from types import SimpleNamespace
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from georeport.agent.agent import ReportAgentService
from georeport.agent.profiles import ANALYZE, COMPARE, DEFAULT_LIMITATION, HISTORY
from georeport.agent.tools import (
    AIR,
    EVENTS,
    FLOOD,
    GEOCODE,
    REVERSE,
    STATS,
    URBAN,
    WEATHER,
    ToolRegistry,
    tool_specs,
)
from georeport.errors import (
    GeocodingFailedError,
    InvalidInputError,
    ModelProtocolError,
    StepLimitExceededError,
)
from georeport.models import AdapterResult, CompareRequest, LocationRequest
from georeport.settings import Settings

VALENCIA = {"lat": 39.4699, "lon": -0.3763}


def report_for(headings) -> str:
    return "\n\n".join(f"## {h}\nContent for {h.lower()}." for h in headings)


ANALYZE_REPORT = report_for(ANALYZE.required_headings)


def tool_call(call_id: str, name: str, args: Any = None) -> SimpleNamespace:
    arguments = args if isinstance(args, str) else json.dumps(args or {})
    return SimpleNamespace(id=call_id, type="function", function=SimpleNamespace(name=name, arguments=arguments))


def completion(content: str | None = None, tool_calls: List[SimpleNamespace] | None = None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_llm(*responses: Any) -> MagicMock:
    llm = MagicMock()
    llm.chat.completions.create = AsyncMock(side_effect=list(responses))
    return llm


def sent_messages(llm: MagicMock, turn: int) -> List[Dict[str, Any]]:
    return llm.chat.completions.create.await_args_list[turn].kwargs["messages"]


@pytest.fixture
def handlers() -> Dict[str, AsyncMock]:
    return {
        GEOCODE: AsyncMock(
            return_value=AdapterResult.success(
                "nominatim",
                found=True,
                lat=39.4697,
                lon=-0.3774,
                display_name="Plaza del Ayuntamiento, Valencia",
                address={"city": "Valencia"},
            )
        ),
        REVERSE: AsyncMock(
            return_value=AdapterResult.success(
                "nominatim",
                display_name="Ayuntamiento de Valencia, Valencia, España",
                address={"city": "València", "country_code": "es"},
                extratags={"wikidata": "Q8818"},
            )
        ),
        URBAN: AsyncMock(
            return_value=AdapterResult.success("overpass", radius_m=1200, counts={"hospitals": 2})
        ),
        FLOOD: AsyncMock(
            return_value=AdapterResult.success("copernicus_efas_wms", method="copernicus_efas_wms")
        ),
        STATS: AsyncMock(
            return_value=AdapterResult.success(
                "wikidata", city={"id": "Q8818", "population": 800000, "area_km2": 134.65}
            )
        ),
        AIR: AsyncMock(return_value=AdapterResult.success("open-meteo", current={"pm2_5": 8.1})),
        WEATHER: AsyncMock(
            return_value=AdapterResult.success("open-meteo-archive", summary={"days": 1826})
        ),
        EVENTS: AsyncMock(
            return_value=AdapterResult.success("nasa-eonet", total_events=3, events=[])
        ),
    }


@pytest.fixture
def settings() -> Settings:
    return Settings(openai_api_key="sk-test", debug=False, max_tool_steps=6, max_compose_steps=2)


def make_engine(llm: MagicMock, handlers: Dict[str, AsyncMock], settings: Settings) -> ReportAgentService:
    return ReportAgentService(llm, ToolRegistry(tool_specs(handlers)), settings)


def site_tool_calls(prefix: str = "call") -> List[SimpleNamespace]:
    return [
        tool_call(f"{prefix}_reverse", REVERSE, VALENCIA),
        tool_call(f"{prefix}_urban", URBAN, {**VALENCIA, "radius_m": 1200}),
        tool_call(f"{prefix}_flood", FLOOD, VALENCIA),
    ]


@pytest.mark.asyncio
async def test_analyze_with_coordinates_succeeds(handlers, settings) -> None:
    """All mandatory tools run before the report is accepted; coords keep the user's point."""
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(lat=39.4699, lon=-0.3763, radius_m=1200))

    assert result["ok"] is True
    assert result["coords"]["lat"] == 39.4699
    assert result["coords"]["display_name"] == "Ayuntamiento de Valencia, Valencia, España"
    assert result["report_markdown"] == ANALYZE_REPORT
    assert result["limitations"] == [DEFAULT_LIMITATION]
    assert result["urban"]["counts"] == {"hospitals": 2}
    assert [s["name"] for s in result["sources"]] == [s.name for s in ANALYZE.sources]
    for name in (REVERSE, URBAN, FLOOD):
        handlers[name].assert_awaited_once()
    handlers[GEOCODE].assert_not_awaited()
    assert handlers[URBAN].await_args.kwargs["radius_m"] == 1200


@pytest.mark.asyncio
async def test_tool_messages_keep_their_call_ids(handlers, settings) -> None:
    llm = fake_llm(completion(tool_calls=site_tool_calls("x")), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    await engine.analyze(LocationRequest(**VALENCIA))

    first = llm.chat.completions.create.await_args_list[0].kwargs
    assert first["tool_choice"] == "auto"
    assert {t["function"]["name"] for t in first["tools"]} == {GEOCODE, REVERSE, URBAN, FLOOD}

    messages = sent_messages(llm, 1)
    assistant = messages[2]
    assert assistant["role"] == "assistant"
    assert [c["id"] for c in assistant["tool_calls"]] == ["x_reverse", "x_urban", "x_flood"]
    tool_messages = [m for m in messages if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["x_reverse", "x_urban", "x_flood"]
    assert json.loads(tool_messages[1]["content"])["source"] == "overpass"


@pytest.mark.asyncio
async def test_analyze_with_address_geocodes_once(handlers, settings) -> None:
    """Geocoding runs once; later tools use the resolved coordinates."""
    llm = fake_llm(
        completion(tool_calls=[tool_call("g1", GEOCODE, {"address": "Plaza del Ayuntamiento, Valencia"})]),
        completion(
            tool_calls=[
                tool_call("g2", GEOCODE, {"address": "Plaza del Ayuntamiento, Valencia"}),
                tool_call("r1", REVERSE, {}),
                tool_call("u1", URBAN, {}),
                tool_call("f1", FLOOD, {}),
            ]
        ),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(address="Plaza del Ayuntamiento, Valencia"))

    handlers[GEOCODE].assert_awaited_once_with(address="Plaza del Ayuntamiento, Valencia", country_code="es")
    assert handlers[URBAN].await_args.kwargs["lat"] == 39.4697
    assert handlers[URBAN].await_args.kwargs["lon"] == -0.3774
    assert handlers[URBAN].await_args.kwargs["radius_m"] == 1200
    assert result["coords"]["lat"] == 39.4697
    # reverse geocoding replaces the name found by the search
    assert result["coords"]["display_name"] == "Ayuntamiento de Valencia, Valencia, España"
    assert result["limitations"] == [DEFAULT_LIMITATION]


@pytest.mark.asyncio
async def test_geocoding_without_results_is_unprocessable(handlers, settings) -> None:
    handlers[GEOCODE].return_value = AdapterResult.failure("nominatim", "No results", found=False, candidates=[])
    llm = fake_llm(
        completion(
            tool_calls=[
                tool_call("g1", GEOCODE, {"address": "zzzz qqqq"}),
                tool_call("u1", URBAN, {"radius_m": 800}),
                tool_call("f1", FLOOD, {}),
            ]
        )
    )
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(GeocodingFailedError) as exc_info:
        await engine.analyze(LocationRequest(address="zzzz qqqq"))

    assert exc_info.value.status_code == 422
    handlers[URBAN].assert_not_awaited()
    handlers[FLOOD].assert_not_awaited()
    handlers[REVERSE].assert_not_awaited()
    assert llm.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_flood_failure_is_reported_as_limitation(handlers, settings) -> None:
    handlers[FLOOD].return_value = AdapterResult.failure("copernicus_efas_wms", "HTTP 503")
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["ok"] is True
    assert result["flood"]["ok"] is False
    assert result["limitations"] == ["Flood risk: HTTP 503"]


@pytest.mark.asyncio
async def test_raising_handler_does_not_abort_the_run(handlers, settings) -> None:
    handlers[FLOOD].side_effect = RuntimeError("WMS exploded")
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["ok"] is True
    assert any(entry.startswith("Flood risk:") and "WMS exploded" in entry for entry in result["limitations"])


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [AttributeError("'list' object has no attribute 'get'"), IndexError("list index out of range")])
async def test_handler_shape_errors_become_limitations(handlers, settings, error) -> None:
    handlers[FLOOD].side_effect = error
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["ok"] is True
    assert result["flood"]["ok"] is False
    assert [entry for entry in result["limitations"] if entry.startswith("Flood risk:")] == [
        f"Flood risk: {type(error).__name__}: {error}"
    ]


@pytest.mark.asyncio
async def test_prefetch_survives_a_raising_handler(handlers, settings) -> None:
    handlers[WEATHER].side_effect = AttributeError("'list' object has no attribute 'get'")
    report = report_for(HISTORY.required_headings)
    engine = make_engine(fake_llm(completion(report)), handlers, settings)

    result = await engine.history(LocationRequest(**VALENCIA))

    assert result["report_markdown"] == report
    assert any(entry.startswith("Historical weather: AttributeError") for entry in result["limitations"])


@pytest.mark.asyncio
async def test_flood_fallback_adds_one_limitation(handlers, settings) -> None:
    handlers[FLOOD].return_value = AdapterResult.degraded(
        "copernicus_efas_wms", method="reverse_geocode_fallback", reason="GetCapabilities HTTP 500"
    )
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["flood"]["fallback_used"] is True
    assert result["limitations"] == ["Flood risk: fallback used (GetCapabilities HTTP 500)."]


@pytest.mark.asyncio
async def test_missing_tools_trigger_corrective_prompt(handlers, settings) -> None:
    llm = fake_llm(
        completion(ANALYZE_REPORT),
        completion(tool_calls=site_tool_calls()),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["ok"] is True
    correction = sent_messages(llm, 1)[-1]
    assert correction["role"] == "user"
    assert "reverse_geocode, urban_layers, flood_risk" in correction["content"]
    assert "lat=39.4699, lon=-0.3763" in correction["content"]


@pytest.mark.asyncio
async def test_missing_headings_trigger_format_correction(handlers, settings) -> None:
    incomplete = report_for(ANALYZE.required_headings[:-1])
    llm = fake_llm(
        completion(tool_calls=site_tool_calls()),
        completion(incomplete),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["report_markdown"] == ANALYZE_REPORT
    correction = sent_messages(llm, 2)[-1]["content"]
    assert "## Limitations" in correction
    assert "## Area description" in correction


@pytest.mark.asyncio
async def test_step_bound_exhaustion_is_fatal(handlers) -> None:
    settings = Settings(openai_api_key="sk-test", debug=False, max_tool_steps=3)
    llm = fake_llm(
        completion(tool_calls=site_tool_calls()),
        completion("No headings at all."),
        completion("Still no headings."),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(StepLimitExceededError) as exc_info:
        await engine.analyze(LocationRequest(**VALENCIA))

    assert exc_info.value.status_code == 502
    assert llm.chat.completions.create.await_count == 3


@pytest.mark.asyncio
async def test_malformed_arguments_do_not_count_as_used(handlers, settings) -> None:
    llm = fake_llm(
        completion(
            tool_calls=[
                tool_call("r1", REVERSE, VALENCIA),
                tool_call("u1", URBAN, "{not json"),
                tool_call("f1", FLOOD, VALENCIA),
            ]
        ),
        completion(ANALYZE_REPORT),
        completion(tool_calls=[tool_call("u2", URBAN, VALENCIA)]),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    bad = [m for m in sent_messages(llm, 1) if m.get("tool_call_id") == "u1"][0]
    assert json.loads(bad["content"])["ok"] is False
    assert "urban_layers" in sent_messages(llm, 2)[-1]["content"]
    assert result["limitations"] == ["Invalid arguments for urban_layers; the call was ignored."]
    handlers[URBAN].assert_awaited_once()


@pytest.mark.asyncio
async def test_unknown_tool_is_answered_with_error(handlers, settings) -> None:
    llm = fake_llm(
        completion(tool_calls=site_tool_calls() + [tool_call("w1", "weather_now", VALENCIA)]),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    unknown = [m for m in sent_messages(llm, 1) if m.get("tool_call_id") == "w1"][0]
    assert "Unknown tool" in json.loads(unknown["content"])["error"]
    assert result["limitations"] == ["Unknown tool requested by the model: weather_now."]


@pytest.mark.asyncio
async def test_repeated_tool_call_overwrites_result(handlers, settings) -> None:
    second = AdapterResult.success("overpass", radius_m=2000, counts={"hospitals": 5})
    handlers[URBAN].side_effect = [
        AdapterResult.success("overpass", radius_m=1200, counts={"hospitals": 2}),
        second,
    ]
    llm = fake_llm(
        completion(tool_calls=site_tool_calls()),
        completion(tool_calls=[tool_call("u2", URBAN, {**VALENCIA, "radius_m": 2000})]),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["urban"] == second.to_payload()
    assert handlers[URBAN].await_count == 2


@pytest.mark.asyncio
async def test_radius_is_clamped(handlers, settings) -> None:
    llm = fake_llm(
        completion(
            tool_calls=[
                tool_call("r1", REVERSE, VALENCIA),
                tool_call("u1", URBAN, {**VALENCIA, "radius_m": 90000}),
                tool_call("f1", FLOOD, VALENCIA),
            ]
        ),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    await engine.analyze(LocationRequest(**VALENCIA))

    assert handlers[URBAN].await_args.kwargs["radius_m"] == 5000


@pytest.mark.asyncio
async def test_geocode_with_user_coordinates_is_skipped(handlers, settings) -> None:
    llm = fake_llm(
        completion(tool_calls=[tool_call("g1", GEOCODE, {"address": "Valencia"})] + site_tool_calls()),
        completion(ANALYZE_REPORT),
    )
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    handlers[GEOCODE].assert_not_awaited()
    assert result["limitations"] == ["Geocoding: skipped because coordinates were provided."]


@pytest.mark.asyncio
async def test_missing_input_is_rejected_before_any_call(handlers, settings) -> None:
    llm = fake_llm()
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(InvalidInputError):
        await engine.analyze(LocationRequest(address="   "))

    llm.chat.completions.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_model_response_is_a_protocol_error(handlers, settings) -> None:
    llm = fake_llm(SimpleNamespace(choices=[]))
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(ModelProtocolError):
        await engine.analyze(LocationRequest(**VALENCIA))


@pytest.mark.asyncio
async def test_provider_error_is_a_protocol_error(handlers, settings) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    llm = fake_llm(openai.APIConnectionError(request=request))
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(ModelProtocolError):
        await engine.analyze(LocationRequest(**VALENCIA))


@pytest.mark.asyncio
async def test_debug_adds_tool_log(handlers) -> None:
    settings = Settings(openai_api_key="sk-test", debug=True)
    llm = fake_llm(completion(tool_calls=site_tool_calls()), completion(ANALYZE_REPORT))
    engine = make_engine(llm, handlers, settings)

    result = await engine.analyze(LocationRequest(**VALENCIA))

    assert result["debug"]["steps"] == 2
    assert [c["name"] for c in result["debug"]["tool_calls"]] == [REVERSE, URBAN, FLOOD]


@pytest.mark.asyncio
async def test_history_prefetches_then_composes(handlers, settings) -> None:
    handlers[EVENTS].return_value = AdapterResult.success("nasa-eonet", total_events=0, events=[])
    handlers[EVENTS].return_value.notices.append("no events recorded in the area.")
    report = report_for(HISTORY.required_headings)
    llm = fake_llm(completion(report))
    engine = make_engine(llm, handlers, settings)

    result = await engine.history(LocationRequest(**VALENCIA))

    assert result["report_markdown"] == report
    assert result["weather"]["summary"] == {"days": 1826}
    assert result["limitations"] == ["Historical events: no events recorded in the area."]
    assert handlers[REVERSE].await_args.kwargs["zoom"] == 16
    assert handlers[WEATHER].await_args.kwargs["years"] == 5
    assert handlers[EVENTS].await_args.kwargs["delta_deg"] == 1.0

    kwargs = llm.chat.completions.create.await_args.kwargs
    assert "tools" not in kwargs
    user = kwargs["messages"][1]["content"]
    assert user.startswith("Coordinates: 39.4699, -0.3763")
    assert "Ayuntamiento de Valencia" in user


@pytest.mark.asyncio
async def test_history_without_headings_fails_after_two_attempts(handlers, settings) -> None:
    llm = fake_llm(completion("plain text"), completion("still plain"))
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(StepLimitExceededError):
        await engine.history(LocationRequest(**VALENCIA))

    assert llm.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_history_with_unknown_address_never_calls_model(handlers, settings) -> None:
    handlers[GEOCODE].return_value = AdapterResult.failure("nominatim", "No results", found=False)
    llm = fake_llm()
    engine = make_engine(llm, handlers, settings)

    with pytest.raises(GeocodingFailedError):
        await engine.history(LocationRequest(address="nowhere at all"))

    handlers[WEATHER].assert_not_awaited()
    llm.chat.completions.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_compare_builds_two_bundles(handlers, settings) -> None:
    handlers[AIR].side_effect = [
        AdapterResult.success("open-meteo", current={"pm2_5": 8.1}),
        AdapterResult.failure("open-meteo", "Open-Meteo HTTP 500"),
    ]
    report = report_for(COMPARE.required_headings)
    llm = fake_llm(completion(report))
    engine = make_engine(llm, handlers, settings)

    result = await engine.compare(
        CompareRequest(a={"lat": 39.4699, "lon": -0.3763}, b={"lat": 40.4168, "lon": -3.7038})
    )

    assert result["ok"] is True
    assert set(result["city_a"]) == {"coords", "reverse", "stats", "air", "flood"}
    assert result["city_a"]["coords"]["lat"] == 39.4699
    assert result["city_b"]["coords"]["lat"] == 40.4168
    assert result["limitations"] == ["City B: Air quality: Open-Meteo HTTP 500"]

    stats_kwargs = handlers[STATS].await_args.kwargs
    assert stats_kwargs["name_hint"] == "València"
    assert stats_kwargs["country_code"] == "es"
    assert stats_kwargs["wikidata_id"] == "Q8818"
    assert all(call.kwargs["zoom"] == 12 for call in handlers[REVERSE].await_args_list)

    user = llm.chat.completions.create.await_args.kwargs["messages"][1]["content"]
    assert user.startswith("Data to compare:")
    assert "City A:" in user and "City B:" in user
