from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    openai_timeout_seconds: float = 60.0

    # Model-turn budgets: tool-calling reports vs. single-shot compositions.
    max_tool_steps: int = 6
    max_compose_steps: int = 2
    max_tool_calls_per_step: int = 8

    default_radius_m: int = 1200
    geocode_country_code: str | None = "es"

    app_user_agent: str = "georeport/0.1 (contact: ops@example.com)"
    http_timeout_ms: int = 12000

    nominatim_base_url: str = "https://nominatim.openstreetmap.org"
    overpass_interpreter_url: str = "https://overpass-api.de/api/interpreter"
    overpass_mirror_urls: str = (
        "https://overpass.kumi.systems/api/interpreter,"
        "https://overpass.nchc.org.tw/api/interpreter"
    )
    ign_features_base_url: str = "https://api-features.ign.es"
    copernicus_efas_wms_url: str = (
        "https://european-flood.emergency.copernicus.eu/api/wms/?request=getcapabilities"
    )
    wikidata_sparql_url: str = "https://query.wikidata.org/sparql"
    wikidata_api_url: str = "https://www.wikidata.org/w/api.php"
    wikidata_entity_url: str = "https://www.wikidata.org/wiki/Special:EntityData"
    open_meteo_air_quality_url: str = "https://air-quality-api.open-meteo.com/v1/air-quality"
    open_meteo_archive_url: str = "https://archive-api.open-meteo.com/v1/archive"
    eonet_events_url: str = "https://eonet.gsfc.nasa.gov/api/v3/events"

    cors_origins: str = "*"

    rate_limit_requests: int = 20
    rate_limit_window_seconds: int = 60
    redis_url: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    def overpass_endpoints(self) -> list[str]:
        """Primary Overpass interpreter followed by mirrors, without duplicates."""
        endpoints = [self.overpass_interpreter_url]
        endpoints += [u.strip() for u in self.overpass_mirror_urls.split(",") if u.strip()]
        seen: set[str] = set()
        unique = []
        for url in endpoints:
            if url not in seen:
                seen.add(url)
                unique.append(url)
        return unique


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
