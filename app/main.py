from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.ratelimit import RateLimiter, client_ip
from app.settings import Settings
from geo.crime import (
    CACHE_CONTROL,
    DATASET_ID,
    DATASET_PAGE_URL,
    DEFAULT_HOURS,
    DEFAULT_LIMIT,
    MAX_HOURS,
    MAX_LIMIT,
    MIN_LIMIT,
    PROVIDER,
    CrimeError,
    clamp_integer,
    fetch_incidents,
    iso_millis,
    parse_bounds,
)
from geo.routes import (
    MAX_WAYPOINTS,
    RouteError,
    compute_route,
    parse_lat_lng,
    route_cache_key,
    to_travel_mode,
)
from ingest.sources import SourceError
from ingest.sync import SyncError, SyncOrchestrator, build_orchestrator
from store.db import StoreError, open_store
from store.local import LocalStorage


logger = logging.getLogger(__name__)

GEOCODE_LIMIT_PER_MINUTE = 25
ROUTE_LIMIT_PER_MINUTE = 40
CRIME_LIMIT_PER_MINUTE = 30
MAX_ADDRESS_CHARS = 300


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        store = open_store(settings.db_path)
    except StoreError as e:
        logger.warning("durable store unavailable, running on local cache only: %s", e)
        store = None
    storage = LocalStorage(settings.data_dir)
    client = httpx.AsyncClient()

    app.state.settings = settings
    app.state.store = store
    app.state.storage = storage
    app.state.limiter = RateLimiter(settings.rate_limit_max_keys)
    app.state.orchestrator = build_orchestrator(
        settings, store=store, storage=storage, client=client
    )
    try:
        yield
    finally:
        await client.aclose()
        if store is not None:
            store.close()


app = FastAPI(lifespan=lifespan)


def _orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def _rate_limited(request: Request, scope: str, limit: int, message: str) -> JSONResponse | None:
    settings: Settings = request.app.state.settings
    limiter: RateLimiter = request.app.state.limiter
    ip = client_ip(request.headers, settings.trust_proxy_ip_headers)
    result = limiter.consume(f"api:{scope}:{ip}", limit, 60_000)
    if result.ok:
        return None
    return JSONResponse(
        {"error": message},
        status_code=429,
        headers={"Retry-After": str(result.retry_after_seconds)},
    )


async def _json_body(request: Request) -> object:
    try:
        return await request.json()
    except ValueError:
        return None


@app.post("/api/sync")
async def api_sync(request: Request) -> JSONResponse:
    try:
        result = await _orchestrator(request).run_sync()
    except SyncError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse(result.summary())


@app.get("/api/events")
def api_events(request: Request) -> JSONResponse:
    return JSONResponse(_orchestrator(request).load_events_payload())


@app.get("/api/sources")
def api_sources(request: Request) -> JSONResponse:
    sources, origin = _orchestrator(request).registry.list_sources()
    return JSONResponse({"sources": [s.to_dict() for s in sources], "source": origin})


@app.post("/api/sources")
async def api_create_source(request: Request) -> JSONResponse:
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid source payload."}, status_code=400)
    try:
        source = await _orchestrator(request).registry.create_source(
            body.get("sourceType"), body.get("url"), body.get("label") or ""
        )
    except (SourceError, StoreError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"source": source.to_dict()})


@app.patch("/api/sources/{source_id}")
async def api_update_source(request: Request, source_id: str) -> JSONResponse:
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid source patch payload."}, status_code=400)
    try:
        source = _orchestrator(request).registry.update_source(
            source_id, label=body.get("label"), status=body.get("status")
        )
    except SourceError as e:
        return JSONResponse({"error": str(e)}, status_code=404 if e.not_found else 400)
    except StoreError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"source": source.to_dict()})


@app.delete("/api/sources/{source_id}")
def api_delete_source(request: Request, source_id: str) -> JSONResponse:
    try:
        _orchestrator(request).registry.delete_source(source_id)
    except SourceError as e:
        return JSONResponse({"error": str(e)}, status_code=404 if e.not_found else 400)
    except StoreError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"deleted": True})


@app.post("/api/sources/{source_id}/sync")
async def api_sync_source(request: Request, source_id: str) -> JSONResponse:
    try:
        result = await _orchestrator(request).sync_single_source(source_id)
    except SourceError as e:
        return JSONResponse({"error": str(e)}, status_code=404 if e.not_found else 500)
    return JSONResponse(result)


@app.post("/api/geocode")
async def api_geocode(request: Request) -> JSONResponse:
    limited = _rate_limited(
        request,
        "geocode",
        GEOCODE_LIMIT_PER_MINUTE,
        "Too many geocode requests. Please retry shortly.",
    )
    if limited is not None:
        return limited

    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid geocode request payload."}, status_code=400)
    address = str(body.get("address") or "").strip()[:MAX_ADDRESS_CHARS]
    if not address:
        return JSONResponse({"error": "Address is required."}, status_code=400)

    coords = await _orchestrator(request).resolver.resolve(address)
    if coords is None:
        return JSONResponse({"error": "Unable to geocode this address."}, status_code=404)
    return JSONResponse({"lat": coords[0], "lng": coords[1]})


@app.post("/api/route")
async def api_route(request: Request) -> JSONResponse:
    limited = _rate_limited(
        request,
        "route",
        ROUTE_LIMIT_PER_MINUTE,
        "Too many route requests. Please retry shortly.",
    )
    if limited is not None:
        return limited

    settings: Settings = request.app.state.settings
    if not settings.routes_api_key:
        return JSONResponse(
            {
                "error": "Missing GOOGLE_MAPS_ROUTES_KEY in .env. "
                "Add a server key with Routes API enabled to draw day routes."
            },
            status_code=400,
        )

    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid route request payload."}, status_code=400)

    origin = parse_lat_lng(body.get("origin"))
    destination = parse_lat_lng(body.get("destination"))
    if origin is None or destination is None:
        return JSONResponse(
            {"error": "Route origin and destination are required."}, status_code=400
        )
    raw_waypoints = body.get("waypoints") if isinstance(body.get("waypoints"), list) else []
    waypoints = [p for p in (parse_lat_lng(w) for w in raw_waypoints) if p is not None]
    waypoints = waypoints[:MAX_WAYPOINTS]
    travel_mode = to_travel_mode(body.get("travelMode"))

    orchestrator = _orchestrator(request)
    cache_key = route_cache_key(origin, destination, waypoints, travel_mode)
    cached = orchestrator.routes.get(cache_key)
    if cached is not None:
        return JSONResponse({**cached, "source": "cache"})

    try:
        route = await compute_route(
            orchestrator.client,
            api_key=settings.routes_api_key,
            origin=origin,
            destination=destination,
            waypoints=waypoints,
            travel_mode=travel_mode,
        )
    except RouteError as e:
        logger.warning("route request failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=e.status_code)

    orchestrator.routes.put(cache_key, route)
    return JSONResponse({**route, "source": "live"})


@app.get("/api/crime")
async def api_crime(request: Request) -> JSONResponse:
    limited = _rate_limited(
        request,
        "crime",
        CRIME_LIMIT_PER_MINUTE,
        "Too many crime data requests. Please retry shortly.",
    )
    if limited is not None:
        return limited

    params = request.query_params
    hours = clamp_integer(params.get("hours"), DEFAULT_HOURS, 1, MAX_HOURS)
    limit = clamp_integer(params.get("limit"), DEFAULT_LIMIT, MIN_LIMIT, MAX_LIMIT)
    bounds = parse_bounds(params)

    settings: Settings = request.app.state.settings
    try:
        incidents = await fetch_incidents(
            _orchestrator(request).client,
            hours=hours,
            limit=limit,
            bounds=bounds,
            app_token=settings.sfgov_app_token,
        )
    except CrimeError as e:
        logger.warning("crime data request failed: %s", e)
        return JSONResponse({"error": str(e), "details": e.details}, status_code=502)

    return JSONResponse(
        {
            "incidents": incidents,
            "hours": hours,
            "limit": limit,
            "count": len(incidents),
            "source": {
                "provider": PROVIDER,
                "datasetId": DATASET_ID,
                "datasetUrl": DATASET_PAGE_URL,
            },
            "bounds": bounds.to_dict() if bounds is not None else None,
            "generatedAt": iso_millis(datetime.now(tz=UTC)),
        },
        headers={"Cache-Control": CACHE_CONTROL},
    )
