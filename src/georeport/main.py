import logging
import math
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from . import sources
from .agent import ReportAgentService, build_tool_registry
from .errors import RateLimitedError, ReportError
from .models import AdapterResult, CompareRequest, GeocodeRequest, LocationRequest, PointQuery
from .services.http import FetchGateway, build_fetch_gateway
from .services.rate_limit import InMemoryBucketStore, RateLimiter, RedisBucketStore
from .services.redis import get_redis_crud_service
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``georeport`` logger tree and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("georeport")
    if not root.handlers:
        root.setLevel(level)
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        root.addHandler(ch)

        fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    return logging.getLogger("georeport.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared HTTP gateway, model client, engine and rate limiter."""
    gateway = build_fetch_gateway(settings.app_user_agent, settings.http_timeout_ms)
    llm = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout_seconds,
    )
    registry = build_tool_registry(gateway)
    app.state.gateway = gateway
    app.state.engine = ReportAgentService(llm, registry, settings)

    store: Any = InMemoryBucketStore()
    redis = get_redis_crud_service(settings)
    if redis is not None:
        try:
            await redis.connect()
            store = RedisBucketStore(redis)
            LOGGER.info("Rate limiting backed by Redis")
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            LOGGER.warning("Redis unavailable, rate limiting in memory: %s", e)
            redis = None
    app.state.rate_limiter = RateLimiter(store, settings.rate_limit_requests, settings.rate_limit_window_seconds)
    LOGGER.info("georeport ready (model=%s)", settings.model)

    yield

    LOGGER.info("Shutting down...")
    await gateway.aclose()
    await llm.close()
    if redis is not None:
        await redis.close()


app = FastAPI(
    title="georeport",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReportError)
async def report_error_handler(request: Request, exc: ReportError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(max(math.ceil(exc.retry_after), 1))}
    return JSONResponse({"ok": False, "error": exc.message}, status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    LOGGER.info("Rejected request to %s: %s", request.url.path, details)
    return JSONResponse({"ok": False, "error": f"Invalid request: {details}"}, status_code=400)


def get_engine(request: Request) -> ReportAgentService:
    return request.app.state.engine


def get_gateway(request: Request) -> FetchGateway:
    return request.app.state.gateway


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request) -> None:
    limiter: RateLimiter = request.app.state.rate_limiter
    decision = await limiter.check(_client_key(request))
    if not decision.allowed:
        raise RateLimitedError("Too many requests. Try again later.", retry_after=decision.reset_seconds)


def _adapter_response(result: AdapterResult) -> JSONResponse:
    return JSONResponse(result.to_payload(), status_code=200 if result.ok else 502)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/api/analyze", dependencies=[Depends(enforce_rate_limit)])
async def analyze(body: LocationRequest, engine: ReportAgentService = Depends(get_engine)) -> dict[str, Any]:
    """Site analysis report for an address or a map point.

    Returns:
        dict[str, Any]: ``coords``, ``urban``, ``flood``, ``reverse``,
            ``report_markdown``, ``sources`` and ``limitations``.
    """
    return await engine.analyze(body)


@app.post("/api/history", dependencies=[Depends(enforce_rate_limit)])
async def history(body: LocationRequest, engine: ReportAgentService = Depends(get_engine)) -> dict[str, Any]:
    """Five-year weather and natural-hazard history of an area."""
    return await engine.history(body)


@app.post("/api/compare", dependencies=[Depends(enforce_rate_limit)])
async def compare(body: CompareRequest, engine: ReportAgentService = Depends(get_engine)) -> dict[str, Any]:
    """Comparison report of two locations ``a`` and ``b``."""
    return await engine.compare(body)


@app.post("/api/geocode")
async def geocode(body: GeocodeRequest, gateway: FetchGateway = Depends(get_gateway)) -> JSONResponse:
    result = await sources.geocode_address(gateway, body.address, body.country_code, body.limit)
    if not result.ok and result.get("found") is False:
        return JSONResponse(result.to_payload(), status_code=404)
    return _adapter_response(result)


@app.post("/api/reverse")
async def reverse(body: PointQuery, gateway: FetchGateway = Depends(get_gateway)) -> JSONResponse:
    return _adapter_response(await sources.reverse_geocode(gateway, body.lat, body.lon, body.zoom or 18))


@app.post("/api/urban")
async def urban(body: PointQuery, gateway: FetchGateway = Depends(get_gateway)) -> JSONResponse:
    radius = body.radius_m or settings.default_radius_m
    return _adapter_response(await sources.urban_layers(gateway, body.lat, body.lon, radius))


@app.post("/api/flood")
async def flood(body: PointQuery, gateway: FetchGateway = Depends(get_gateway)) -> JSONResponse:
    return _adapter_response(await sources.flood_risk(gateway, body.lat, body.lon))


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
