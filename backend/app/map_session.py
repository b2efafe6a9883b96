from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass

from .color_scale import choropleth_layer
from .config import Settings
from .data_cache import DataCache
from .enrichment_service import EnrichmentResult, enrich_features
from .highlight_overlay import HighlightOverlayManager
from .tract_resolver import Geocoder, TractResolver
from .viewport import HeadlessViewport

TRACT_SOURCE_ID = "ct-opportunity-data"
TRACT_LAYER_ID = "census-tracts-layer"


async def load_enriched_tracts(
    cache: DataCache,
    settings: Settings,
    *,
    use_cache: bool = True,
) -> EnrichmentResult:
    """Fetch tract polygons and the metric CSV together, then join them."""
    collection, rows = await asyncio.gather(
        cache.get(settings.tracts_bucket, settings.tracts_geojson_key, "json", use_cache),
        cache.get(settings.tracts_bucket, settings.metrics_csv_key, "csv", use_cache),
    )
    return enrich_features(collection, rows, value_field=settings.metric_value_field)


def preload_tract_datasets(cache: DataCache, settings: Settings) -> list[asyncio.Task]:
    return [
        cache.preload_in_background(settings.tracts_bucket, settings.tracts_geojson_key, "json"),
        cache.preload_in_background(settings.tracts_bucket, settings.metrics_csv_key, "csv"),
    ]


@dataclass
class MapSession:
    """One map view: viewport, highlight overlay and resolver wired together."""

    viewport: HeadlessViewport
    overlay: HighlightOverlayManager
    resolver: TractResolver

    @classmethod
    def create(
        cls,
        enrichment: EnrichmentResult,
        *,
        geocoder: Geocoder,
        settings: Settings,
        rng: random.Random | None = None,
    ) -> "MapSession":
        viewport = HeadlessViewport()
        viewport.add_source(
            TRACT_SOURCE_ID,
            {"type": "geojson", "data": enrichment.feature_collection()},
        )
        viewport.add_layer(choropleth_layer(TRACT_SOURCE_ID, TRACT_LAYER_ID))
        overlay = HighlightOverlayManager(viewport)
        resolver = TractResolver(
            viewport,
            geocoder,
            overlay,
            source_id=TRACT_SOURCE_ID,
            layer_id=TRACT_LAYER_ID,
            settle_delay=settings.viewport_settle_seconds,
            moveend_timeout=settings.moveend_timeout_seconds,
            rng=rng,
        )
        return cls(viewport=viewport, overlay=overlay, resolver=resolver)

    def close(self) -> None:
        self.resolver.close()
        self.overlay.close()
