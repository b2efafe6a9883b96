from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Literal

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .color_scale import choropleth_layer, legend
from .config import Settings, configure_logging, get_settings
from .data_cache import DataCache, DataCacheError, GatewaySource, SQLiteKeyValueStore, TabularParseError
from .geocoding_service import MapboxGeocoder, UpstreamAPIError
from .map_session import (
    TRACT_LAYER_ID,
    TRACT_SOURCE_ID,
    MapSession,
    load_enriched_tracts,
    preload_tract_datasets,
)
from .object_store_service import ObjectStoreError, ObjectStoreGateway
from .schemas import SelectionResponse, SubFactorScore, TractLayerResponse
from .tract_resolver import NoLocationFoundError

configure_logging()
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_gateway() -> ObjectStoreGateway:
    return ObjectStoreGateway.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_data_cache() -> DataCache:
    settings = get_settings()
    return DataCache(
        GatewaySource(get_gateway()),
        store=SQLiteKeyValueStore(settings.data_cache_path),
        ttl=settings.data_cache_ttl,
    )


async def get_geocoder(settings: Settings = Depends(get_settings)) -> AsyncIterator[MapboxGeocoder]:
    async with httpx.AsyncClient(follow_redirects=True) as client:
        yield MapboxGeocoder(
            client,
            access_token=settings.mapbox_access_token,
            country=settings.geocoder_country,
        )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    if settings.preload_datasets:
        preload_tract_datasets(get_data_cache(), settings)
    yield


app = FastAPI(title="Opportunity Map API", version="0.1.0", lifespan=lifespan)

allow_origins = list(get_settings().cors_origins) or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/s3")
def object_store_read(
    bucket: str | None = Query(None),
    key: str | None = Query(None),
    data_type: Literal["json", "csv"] = Query("json", alias="type"),
    nocache: str | None = Query(None),
    gateway: ObjectStoreGateway = Depends(get_gateway),
) -> Response:
    """Proxy an S3 object as CSV or JSON, with a short server-side cache."""
    if not bucket or not key:
        return JSONResponse(
            {"error": "Missing required parameters: bucket and key"}, status_code=400
        )

    try:
        result = gateway.fetch(bucket, key, data_type, use_cache=nocache is None)
    except ObjectStoreError as exc:
        logger.error("Error fetching from S3: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=500)

    return Response(
        content=result.body,
        media_type=result.content_type,
        headers={"X-Cache": "HIT" if result.cache_hit else "MISS"},
    )


@app.get("/api/tracts/layer", response_model=TractLayerResponse)
async def tracts_layer(
    nocache: bool = Query(False),
    cache: DataCache = Depends(get_data_cache),
    settings: Settings = Depends(get_settings),
) -> TractLayerResponse:
    """Enriched tract polygons plus the choropleth layer and legend to draw them."""
    try:
        enrichment = await load_enriched_tracts(cache, settings, use_cache=not nocache)
    except (DataCacheError, TabularParseError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return TractLayerResponse(
        source_id=TRACT_SOURCE_ID,
        data=enrichment.feature_collection(),
        layer=choropleth_layer(TRACT_SOURCE_ID, TRACT_LAYER_ID),
        legend=legend(),
        stats={
            "features": len(enrichment.features),
            "matched": enrichment.matched,
            "synthesized": enrichment.synthesized,
            "warnings": enrichment.warnings,
        },
    )


@app.get("/api/tracts/resolve", response_model=SelectionResponse)
async def tracts_resolve(
    address: str = Query(..., min_length=1, max_length=300),
    cache: DataCache = Depends(get_data_cache),
    geocoder: MapboxGeocoder = Depends(get_geocoder),
    settings: Settings = Depends(get_settings),
) -> SelectionResponse:
    """Resolve a free-text address to a scored census tract selection."""
    if not address.strip():
        raise HTTPException(status_code=422, detail="address must not be blank")

    try:
        enrichment = await load_enriched_tracts(cache, settings)
    except (DataCacheError, TabularParseError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    session = MapSession.create(enrichment, geocoder=geocoder, settings=settings)
    try:
        selection = await session.resolver.resolve(address)
    except NoLocationFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UpstreamAPIError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    finally:
        session.close()

    if selection is None:
        raise HTTPException(status_code=409, detail="Resolution was superseded")

    return SelectionResponse(
        address=address.strip(),
        tract_id=selection.tract_id,
        score=selection.score,
        sub_scores=[
            SubFactorScore(name=name, score=score) for name, score in selection.sub_scores.items()
        ],
        location_label=selection.location_label,
        strategy=selection.strategy.value,
        synthetic=selection.synthetic,
        value=selection.value,
        longitude=selection.coordinates[0],
        latitude=selection.coordinates[1],
        feature=selection.feature,
    )
