import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Tuple

from ..models import AdapterResult
from ..services.http import FetchGateway
from .. import sources

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[AdapterResult]]

GEOCODE = "geocode_address"
REVERSE = "reverse_geocode"
URBAN = "urban_layers"
FLOOD = "flood_risk"
STATS = "city_stats"
AIR = "air_quality"
WEATHER = "historical_weather"
EVENTS = "historical_events"


@dataclass(frozen=True)
class ToolSpec:
    """One adapter as a callable tool: declaration for the model plus dispatch target."""

    name: str
    label: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    needs_coords: bool = True
    defaults: Mapping[str, Any] = field(default_factory=dict)
    clamps: Mapping[str, Tuple[float, float]] = field(default_factory=dict)

    @property
    def properties(self) -> Dict[str, Dict[str, Any]]:
        return self.parameters.get("properties", {})

    def schema(self) -> Dict[str, Any]:
        """OpenAI function-tool declaration."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Name -> ToolSpec lookup used for declarations and dispatch."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            self._specs[spec.name] = spec

    @property
    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def schemas(self, names: Iterable[str]) -> List[Dict[str, Any]]:
        """Declarations for the given tool names, in that order."""
        return [self._specs[name].schema() for name in names if name in self._specs]


def _object(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


_POINT = {
    "lat": {"type": "number", "description": "Latitude (WGS84)"},
    "lon": {"type": "number", "description": "Longitude (WGS84)"},
}


def tool_specs(handlers: Mapping[str, ToolHandler]) -> List[ToolSpec]:
    """Declarations of every known tool bound to the given handlers."""
    return [
        ToolSpec(
            name=GEOCODE,
            label="Geocoding",
            description="Convert an address into coordinates using Nominatim (OpenStreetMap).",
            parameters=_object(
                {"address": {"type": "string", "description": "Free-text address to resolve"}},
                ["address"],
            ),
            handler=handlers[GEOCODE],
            needs_coords=False,
        ),
        ToolSpec(
            name=REVERSE,
            label="Reverse geocoding",
            description="Convert coordinates into the nearest address with administrative data (Nominatim reverse).",
            parameters=_object(
                {**_POINT, "zoom": {"type": "number", "description": "Detail level, 3 (country) to 18 (building)"}},
                ["lat", "lon"],
            ),
            handler=handlers[REVERSE],
            defaults={"zoom": 18},
            clamps={"zoom": (3, 18)},
        ),
        ToolSpec(
            name=URBAN,
            label="Urban layers",
            description="Infrastructure and land use around the point (Overpass, plus IGN administrative unit).",
            parameters=_object(
                {**_POINT, "radius_m": {"type": "number", "description": "Search radius in metres"}},
                ["lat", "lon", "radius_m"],
            ),
            handler=handlers[URBAN],
            clamps={"radius_m": (200, 5000)},
        ),
        ToolSpec(
            name=FLOOD,
            label="Flood risk",
            description="Flood risk indicators for the point (Copernicus EFAS WMS).",
            parameters=_object(dict(_POINT), ["lat", "lon"]),
            handler=handlers[FLOOD],
        ),
        ToolSpec(
            name=STATS,
            label="City stats",
            description="Population, area and density of the nearest city (Wikidata).",
            parameters=_object(
                {
                    **_POINT,
                    "name_hint": {"type": "string", "description": "City name, if known"},
                    "country_code": {"type": "string", "description": "ISO 3166-1 alpha-2 country code"},
                    "wikidata_id": {"type": "string", "description": "Wikidata entity id (Q...)"},
                },
                ["lat", "lon"],
            ),
            handler=handlers[STATS],
        ),
        ToolSpec(
            name=AIR,
            label="Air quality",
            description="Current air quality indicators for the point (Open-Meteo).",
            parameters=_object(dict(_POINT), ["lat", "lon"]),
            handler=handlers[AIR],
        ),
        ToolSpec(
            name=WEATHER,
            label="Historical weather",
            description="Temperature, rainfall and wind summary of the last years (Open-Meteo archive).",
            parameters=_object(
                {**_POINT, "years": {"type": "integer", "description": "Number of years to look back"}},
                ["lat", "lon"],
            ),
            handler=handlers[WEATHER],
            defaults={"years": 5},
            clamps={"years": (1, 10)},
        ),
        ToolSpec(
            name=EVENTS,
            label="Historical events",
            description="Natural events (fires, floods, storms) recorded around the point (NASA EONET).",
            parameters=_object(
                {
                    **_POINT,
                    "years": {"type": "integer", "description": "Number of years to look back"},
                    "delta_deg": {"type": "number", "description": "Half-size of the search box in degrees"},
                },
                ["lat", "lon"],
            ),
            handler=handlers[EVENTS],
            defaults={"years": 5, "delta_deg": 1.0},
            clamps={"years": (1, 10), "delta_deg": (0.1, 5.0)},
        ),
    ]


def build_tool_registry(gateway: FetchGateway) -> ToolRegistry:
    """Registry of all adapters bound to a shared FetchGateway."""
    adapters = {
        GEOCODE: sources.geocode_address,
        REVERSE: sources.reverse_geocode,
        URBAN: sources.urban_layers,
        FLOOD: sources.flood_risk,
        STATS: sources.city_stats,
        AIR: sources.air_quality,
        WEATHER: sources.historical_weather,
        EVENTS: sources.historical_events,
    }
    handlers = {name: functools.partial(func, gateway) for name, func in adapters.items()}
    registry = ToolRegistry(tool_specs(handlers))
    logger.debug("Tool registry ready: %s", ", ".join(registry.names))
    return registry
