"""Source adapters: one stateless wrapper per upstream geodata API.

Every adapter takes a FetchGateway first and returns an AdapterResult; none
of them raises.
"""

from .air_quality import air_quality
from .city_stats import city_stats
from .flood_risk import flood_risk
from .geocode import geocode_address
from .historical_events import historical_events
from .historical_weather import historical_weather
from .reverse_geocode import reverse_geocode
from .urban_layers import urban_layers

__all__ = [
    "air_quality",
    "city_stats",
    "flood_risk",
    "geocode_address",
    "historical_events",
    "historical_weather",
    "reverse_geocode",
    "urban_layers",
]
