"""Report profiles: everything that differs between report types.

The engine in ``agent.py`` is shared; a profile decides which tools are
mandatory, which headings the Markdown must contain, which bibliography may
be cited and whether the model calls tools itself or composes from
prefetched data.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Tuple

from ..models import SourceRef
from ..sources.reverse_geocode import pick_place_name
from .tools import AIR, EVENTS, FLOOD, REVERSE, STATS, URBAN, WEATHER

if TYPE_CHECKING:
    from .state import SessionState

DEFAULT_LIMITATION = "No notable issues reported by the tools."

NOMINATIM = SourceRef("Nominatim (OSM)", "https://nominatim.org/release-docs/latest/develop/overview/")
OVERPASS = SourceRef("Overpass API (OSM)", "https://wiki.openstreetmap.org/wiki/Overpass_API")
IGN = SourceRef("IGN API Features", "https://api-features.ign.es/")
EFAS = SourceRef("Copernicus EFAS WMS", "https://european-flood.emergency.copernicus.eu/api/wms/")
WIKIDATA_SPARQL = SourceRef("Wikidata SPARQL", "https://query.wikidata.org/")
WIKIDATA_ENTITY = SourceRef("Wikidata EntityData", "https://www.wikidata.org/wiki/Special:EntityData/")
OPEN_METEO_AIR = SourceRef("Open-Meteo Air Quality", "https://open-meteo.com/en/docs/air-quality-api")
OPEN_METEO_ARCHIVE = SourceRef("Open-Meteo Archive", "https://open-meteo.com/en/docs/historical-weather-api")
EONET = SourceRef("NASA EONET", "https://eonet.gsfc.nasa.gov/docs/v3")

ArgsFactory = Callable[["SessionState"], Dict[str, Any]]


@dataclass(frozen=True)
class ToolInvocation:
    """A tool call planned by the engine rather than requested by the model."""

    name: str
    args: Mapping[str, Any] | ArgsFactory = field(default_factory=dict)

    def resolve(self, state: SessionState) -> Dict[str, Any]:
        if callable(self.args):
            return dict(self.args(state))
        return dict(self.args)


@dataclass(frozen=True)
class ReportProfile:
    name: str
    role: str
    rules: Tuple[str, ...]
    required_headings: Tuple[str, ...]
    sources: Tuple[SourceRef, ...]
    max_steps: int
    opening: Callable[[SessionState], str]
    mandatory_tools: Tuple[str, ...] = ()
    # Tools declared to the model; empty means the report is composed in one shot.
    declared_tools: Tuple[str, ...] = ()
    result_fields: Tuple[Tuple[str, str], ...] = ()
    prefetch: Tuple[Tuple[ToolInvocation, ...], ...] = ()
    default_limitation: str = DEFAULT_LIMITATION

    @property
    def tool_calling(self) -> bool:
        return bool(self.declared_tools)

    def heading_lines(self) -> str:
        return "\n".join(f"## {heading}" for heading in self.required_headings)

    def system_prompt(self) -> str:
        rules = "\n".join(f"- {rule}" for rule in self.rules)
        bibliography = "\n".join(f"- {s.name}: {s.url}" for s in self.sources)
        return (
            f"{self.role}\n"
            f"HARD RULES:\n{rules}\n"
            f'- Cite "Sources consulted" using only this bibliography:\n\n{bibliography}\n\n'
            f"FORMAT (mandatory, Markdown, these exact sections):\n{self.heading_lines()}"
        )

    def format_correction(self) -> str:
        return (
            "The report does not follow the required format. Return ONLY the Markdown "
            f"report with these exact sections:\n{self.heading_lines()}"
        )


def _dump(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def _analyze_opening(state: SessionState) -> str:
    if state.coords_from_user and state.coords is not None:
        return (
            f"The user selected a point on the map: lat={state.coords.lat}, lon={state.coords.lon}, "
            f"radius_m={state.radius_m}. Call reverse_geocode, urban_layers and flood_risk."
        )
    return (
        f'The user entered an address: "{state.address}". First call geocode_address; '
        f"then call reverse_geocode, urban_layers (radius_m={state.radius_m}) and flood_risk."
    )


def _history_opening(state: SessionState) -> str:
    coords = state.coords
    return "\n".join(
        [
            f"Coordinates: {coords.lat}, {coords.lon}" if coords else "Coordinates: unknown",
            f"Area: {(coords.display_name if coords else None) or 'Unnamed'}",
            "Data (JSON):",
            _dump(state.bundle()),
        ]
    )


def _compare_opening(state: SessionState) -> str:
    parts = ["Data to compare:"]
    for child in state.children.values():
        parts.append(f"{child.label}:\n{_dump(child.bundle())}\n")
    return "\n".join(parts).rstrip()


def _city_stats_args(state: SessionState) -> Dict[str, Any]:
    reverse = state.payload(REVERSE)
    if not reverse or not reverse.get("ok"):
        return {}
    address = reverse.get("address") or {}
    extratags = reverse.get("extratags") or {}
    return {
        "name_hint": pick_place_name(reverse),
        "country_code": address.get("country_code"),
        "wikidata_id": extratags.get("wikidata"),
    }


ANALYZE = ReportProfile(
    name="analyze",
    role="You are a professional GIS assistant.",
    rules=(
        "Do NOT invent data. Use only data returned by the tools and the user's context.",
        'If an API fails or has no coverage, say so explicitly under "Limitations"; '
        "use a fallback only when it is marked as an estimate.",
        "Call reverse_geocode, urban_layers and flood_risk before writing the report.",
    ),
    required_headings=(
        "Area description",
        "Nearby infrastructure",
        "Relevant risks",
        "Potential urban uses",
        "Final recommendation",
        "Sources consulted",
        "Limitations",
    ),
    sources=(NOMINATIM, OVERPASS, IGN, EFAS),
    max_steps=6,
    opening=_analyze_opening,
    mandatory_tools=(REVERSE, URBAN, FLOOD),
    declared_tools=("geocode_address", REVERSE, URBAN, FLOOD),
    result_fields=((URBAN, "urban"), (FLOOD, "flood"), (REVERSE, "reverse")),
)

HISTORY = ReportProfile(
    name="history",
    role="You are a GIS analyst focused on the history of an area (last 5 years).",
    rules=(
        "Use ONLY the data provided.",
        "Do not invent data or events.",
        'If there are no records, say so clearly under "Limitations".',
        "Use weather.summary for temperature and rainfall.",
        "Use events (NASA EONET) for wildfires, floods and other hazards.",
    ),
    required_headings=(
        "Area summary",
        "Temperature (last 5 years)",
        "Rainfall (last 5 years)",
        "Recorded wildfires",
        "Recorded floods",
        "Other relevant hazards",
        "Sources consulted",
        "Limitations",
    ),
    sources=(NOMINATIM, OPEN_METEO_ARCHIVE, EONET),
    max_steps=2,
    opening=_history_opening,
    mandatory_tools=(REVERSE, WEATHER, EVENTS),
    result_fields=((REVERSE, "reverse"), (WEATHER, "weather"), (EVENTS, "events")),
    prefetch=(
        (ToolInvocation(REVERSE, {"zoom": 16}),),
        (
            ToolInvocation(WEATHER, {"years": 5}),
            ToolInvocation(EVENTS, {"years": 5, "delta_deg": 1.0}),
        ),
    ),
)

# One side of a comparison; never talks to the model on its own.
LOCATION = ReportProfile(
    name="location",
    role="",
    rules=(),
    required_headings=(),
    sources=(),
    max_steps=0,
    opening=lambda state: "",
    mandatory_tools=(REVERSE, STATS, AIR, FLOOD),
    result_fields=((REVERSE, "reverse"), (STATS, "stats"), (AIR, "air"), (FLOOD, "flood")),
    prefetch=(
        (
            ToolInvocation(REVERSE, {"zoom": 12}),
            ToolInvocation(AIR),
            ToolInvocation(FLOOD),
        ),
        (ToolInvocation(STATS, _city_stats_args),),
    ),
)

COMPARE = ReportProfile(
    name="compare",
    role="You are a GIS and urban analyst.",
    rules=(
        "Use ONLY the data provided.",
        "Do not invent data or sources.",
        'If a figure is missing, say so under "Limitations".',
        "For population and area, cite the source (use stats.city.source_url when available).",
    ),
    required_headings=(
        "City A",
        "City B",
        "Comparison",
        "Population",
        "Area",
        "Air quality",
        "Flood risk",
        "Other indicators",
        "Final recommendation",
        "Sources consulted",
        "Limitations",
    ),
    sources=(NOMINATIM, WIKIDATA_SPARQL, WIKIDATA_ENTITY, OPEN_METEO_AIR, EFAS),
    max_steps=2,
    opening=_compare_opening,
)

PROFILES: Dict[str, ReportProfile] = {p.name: p for p in (ANALYZE, HISTORY, LOCATION, COMPARE)}
