"""MetroSafe Backend — FastAPI Routes"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from aggregation import aggregate, get_category_percentage
from briefing import generate_briefing
from cache import area_cache, geocode_cache, suggest_cache
from config import HTTP_TIMEOUT_S
from errors import (
    AreaFetchFailed, LocationNotFound, MetroSafeError,
    OutOfRegion, RateLimitExceeded, TransientFetchFailure,
)
from geo import generate_grid
from geocoding import LocationResolver, NominatimClient, PostcodesClient
from models import (
    AreaSummaryRequest, AreaSummaryResponse, BriefingRequest,
    BriefingResponse, Coordinate, ResolvedLocation,
)
from police_api import AreaFetchOrchestrator
from rate_queue import RateLimitedQueue

logger = logging.getLogger("metrosafe")


# ─────────────────────────── Services ───────────────────────────

@dataclass
class Services:
    client: httpx.AsyncClient
    queue: RateLimitedQueue
    resolver: LocationResolver
    orchestrator: AreaFetchOrchestrator

    @classmethod
    def build(cls, client: httpx.AsyncClient) -> "Services":
        # One queue per process: every area fetch shares the upstream rate limit
        queue = RateLimitedQueue(client)
        resolver = LocationResolver(
            PostcodesClient(client),
            NominatimClient(client),
            cache=geocode_cache,
            suggestions_cache=suggest_cache,
        )
        return cls(client=client, queue=queue, resolver=resolver,
                   orchestrator=AreaFetchOrchestrator(queue))

    async def aclose(self):
        await self.queue.aclose()
        await self.client.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = Services.build(httpx.AsyncClient(timeout=HTTP_TIMEOUT_S))
    logger.info("MetroSafe services ready")
    try:
        yield
    finally:
        await app.state.services.aclose()


def get_services(request: Request) -> Services:
    return request.app.state.services


# ─────────────────────────── App Setup ──────────────────────────

app = FastAPI(title="MetroSafe API", version="1.0.0", lifespan=lifespan)

_allowed_origins = [
    f"http://localhost:{p}" for p in range(5173, 5180)
] + [
    f"http://127.0.0.1:{p}" for p in range(5173, 5180)
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _to_http_error(e: MetroSafeError) -> HTTPException:
    cause = e.cause if isinstance(e, AreaFetchFailed) and e.cause is not None else e
    if isinstance(e, OutOfRegion):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, LocationNotFound):
        return HTTPException(status_code=404, detail=f"{e}. Try a different place name or postcode.")
    if isinstance(e, RateLimitExceeded):
        return HTTPException(status_code=429, detail="Crime data service is busy. Please try again in a minute.")
    if isinstance(cause, TransientFetchFailure):
        return HTTPException(status_code=502, detail=f"Could not fetch data ({cause}). Please try again.")
    return HTTPException(status_code=502, detail=str(e))


# ─────────────────────────── Utility Endpoints ──────────────────

@app.get("/api/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "version": "1.0.0",
        "queue": {"pending": services.queue.pending, **services.queue.stats},
    }


@app.get("/api/geocode", response_model=ResolvedLocation)
async def geocode(query: str, services: Services = Depends(get_services)):
    try:
        return await services.resolver.resolve(query)
    except MetroSafeError as e:
        raise _to_http_error(e)


@app.get("/api/autocomplete")
async def autocomplete(query: str, services: Services = Depends(get_services)):
    suggestions = await services.resolver.suggest(query)
    return {"suggestions": [s.model_dump() for s in suggestions]}


# ─────────────────────────── Area Summary ───────────────────────

@app.post("/api/area-summary", response_model=AreaSummaryResponse)
async def area_summary(req: AreaSummaryRequest, services: Services = Depends(get_services)):
    try:
        if req.query and req.query.strip():
            location = await services.resolver.resolve(req.query)
        elif req.lat is not None and req.lon is not None:
            location = services.resolver.from_coordinates(req.lat, req.lon)
        else:
            raise HTTPException(status_code=400, detail="Provide 'query' or 'lat'+'lon'")

        center = Coordinate(lat=location.lat, lon=location.lon)
        month = services.orchestrator.current_month()
        samples = len(generate_grid(center, req.radiusKm))

        def _log_progress(completed: int, total: int):
            logger.debug(f"{location.displayName}: {completed}/{total} samples")

        cache_key = f"area:{center.lat:.4f},{center.lon:.4f}:{req.radiusKm}:{month}"
        records = area_cache.get(cache_key)
        failed = 0
        if records is None:
            if req.allowPartial:
                result = await services.orchestrator.fetch_area_partial(
                    center, req.radiusKm, on_progress=_log_progress, month=month)
                records = result.records
                failed = len(result.failedSamples)
            else:
                records = await services.orchestrator.fetch_area(
                    center, req.radiusKm, on_progress=_log_progress, month=month)
            if failed == 0:
                area_cache.set(cache_key, records)
        else:
            logger.info(f"Area cache hit for {location.displayName}")
    except MetroSafeError as e:
        raise _to_http_error(e)

    summary = aggregate(records)
    return AreaSummaryResponse(
        location=location,
        month=month,
        radiusKm=req.radiusKm,
        samples=samples,
        summary=summary,
        categoryPercentages={
            category: get_category_percentage(summary, category)
            for category in summary.categoryCounts
        },
        failedSamples=failed,
        partial=failed > 0,
    )


# ─────────────────────────── Briefing (Gemini passthrough) ──────

@app.post("/api/briefing", response_model=BriefingResponse)
async def briefing(req: BriefingRequest):
    text = await generate_briefing(req.locationName, req.summary, api_key=req.apiKey)
    return BriefingResponse(briefing=text)
